"""
Token usage ledger: one append-only audit row per successful charge.

Rows go to the Supabase `token_usage_log` table when the service role is
configured, otherwise to an in-process list.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field
from supabase import Client, create_client

from .models import Job, utcnow

logger = logging.getLogger(__name__)

LEDGER_TABLE = "token_usage_log"


class LedgerEntry(BaseModel):
    job_id: str
    owner_id: str
    provider: str
    kind: str
    model: Optional[str] = None
    amount: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def for_job(cls, job: Job, amount: int) -> "LedgerEntry":
        metadata = {}
        if job.is_segment:
            metadata = {"timeline_id": job.timeline_id, "position": job.position}
        if job.result and "predict_time" in job.result.metadata:
            metadata["predict_time"] = job.result.metadata["predict_time"]
        return cls(
            job_id=job.id,
            owner_id=job.owner_id,
            provider=job.provider,
            kind=job.kind.value,
            model=job.model,
            amount=amount,
            metadata=metadata,
        )


class Ledger(ABC):
    @abstractmethod
    async def append(self, entry: LedgerEntry):
        ...


class MemoryLedger(Ledger):
    def __init__(self):
        self.entries: list[LedgerEntry] = []

    async def append(self, entry: LedgerEntry):
        self.entries.append(entry)

    def for_job(self, job_id: str) -> list[LedgerEntry]:
        return [e for e in self.entries if e.job_id == job_id]


class SupabaseLedger(Ledger):
    """Writes through the service-role client (bypasses RLS)."""

    def __init__(self, client: Client, table: str = LEDGER_TABLE):
        self.client = client
        self.table = table

    @classmethod
    def from_env(cls) -> Optional["SupabaseLedger"]:
        url = os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            return None
        return cls(create_client(url, key))

    def _insert(self, entry: LedgerEntry):
        self.client.table(self.table).insert({
            "job_id": entry.job_id,
            "user_id": entry.owner_id,
            "provider": entry.provider,
            "operation_type": entry.kind,
            "model": entry.model,
            "tokens_used": entry.amount,
            "metadata": json.dumps(entry.metadata),
            "created_at": entry.created_at.isoformat(),
        }).execute()

    async def append(self, entry: LedgerEntry):
        # supabase-py is synchronous; keep it off the event loop
        await asyncio.to_thread(self._insert, entry)
        logger.info(f"[{entry.job_id}] Ledger: {entry.amount} tokens ({entry.provider}/{entry.model})")
