from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence

from src.core.branch_scope import BranchScope
from src.core.supabase import SupabaseClient
from src.models.guide_metrics import WalletGoalRecord, WalletRecord, WalletTransactionRecord
from src.repositories.query_filters import MAX_QUERY_ROWS, chunked, in_filter, window_filters

TRANSACTION_SELECT = "id,amount,transaction_type,reference_type,reference_id,created_at"


class GuideWalletsRepository:
    def __init__(self, client: Optional[SupabaseClient] = None) -> None:
        self.client = client or SupabaseClient()

    def get_wallet(self, guide_id: str, scope: BranchScope) -> Optional[WalletRecord]:
        row = self.client.select_first(
            table="guide_wallets",
            select="id,guide_id",
            filters=scope.apply([("guide_id", f"eq.{guide_id}")]),
        )
        return WalletRecord.model_validate(row) if row else None

    def list_trip_earnings(
        self, wallet_id: str, trip_ids: Sequence[str]
    ) -> List[WalletTransactionRecord]:
        transactions: List[WalletTransactionRecord] = []
        for chunk in chunked(list(trip_ids)):
            rows = self.client.select(
                table="guide_wallet_transactions",
                select=TRANSACTION_SELECT,
                filters=[
                    ("wallet_id", f"eq.{wallet_id}"),
                    ("transaction_type", "eq.earning"),
                    ("reference_type", "eq.trip"),
                    ("reference_id", in_filter(chunk)),
                ],
                limit=MAX_QUERY_ROWS,
            )
            transactions.extend(WalletTransactionRecord.model_validate(row) for row in rows)
        return transactions

    def list_transactions(
        self,
        wallet_id: str,
        transaction_type: str,
        start: datetime,
        end: datetime,
    ) -> List[WalletTransactionRecord]:
        rows = self.client.select(
            table="guide_wallet_transactions",
            select=TRANSACTION_SELECT,
            filters=[
                ("wallet_id", f"eq.{wallet_id}"),
                ("transaction_type", f"eq.{transaction_type}"),
                *window_filters("created_at", start, end),
            ],
            limit=MAX_QUERY_ROWS,
            order="created_at.asc",
        )
        return [WalletTransactionRecord.model_validate(row) for row in rows]

    def get_savings_goal(self, wallet_id: str) -> Optional[WalletGoalRecord]:
        row = self.client.select_first(
            table="guide_wallet_goals",
            select="auto_save_percentage",
            filters=[("wallet_id", f"eq.{wallet_id}")],
        )
        return WalletGoalRecord.model_validate(row) if row else None
