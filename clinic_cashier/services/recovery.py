# clinic_cashier/services/recovery.py
"""
Recovery Monitor - crash-recovery marker for in-flight settlements.

A marker is written once the invoice version has been validated and removed
when the settlement ends. If the process or browser dies in between, the next
mount finds the marker and reconciles it against the server.
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Optional, Protocol

import redis.asyncio as redis
from pydantic import ValidationError

from clinic_cashier.core.config import Settings
from clinic_cashier.core.errors import CashierError, InvoiceNotFoundError
from clinic_cashier.schemas.invoice import InvoiceStatus
from clinic_cashier.schemas.settlement import Notice, RecoveryAction, RecoveryMarker, RecoveryOutcome
from clinic_cashier.services.invoice_api import InvoiceApiClient

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class MemoryKeyValueStore:
    """Process-local store; markers do not survive a restart"""

    def __init__(self):
        self._store: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._store.get(key)

    async def set(self, key: str, value: str) -> None:
        self._store[key] = value

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def close(self) -> None:
        return None


class JsonFileKeyValueStore:
    """All keys in one JSON object on disk"""

    def __init__(self, path: str):
        self.path = path
        self._lock = asyncio.Lock()

    def _read_all(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError:
                logger.warning(f"Recovery file {self.path} is corrupt, starting empty")
                return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, str]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp_path, self.path)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._read_all().get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = self._read_all()
            if key in data:
                del data[key]
                self._write_all(data)

    async def close(self) -> None:
        return None


class RedisKeyValueStore:
    """Shared store so a marker follows the cashier across app instances"""

    def __init__(self, client: redis.Redis, prefix: str = "cashier:recovery:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(redis.from_url(url, decode_responses=True, health_check_interval=30))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self.prefix + key)

    async def set(self, key: str, value: str) -> None:
        await self.client.set(self.prefix + key, value)

    async def delete(self, key: str) -> None:
        await self.client.delete(self.prefix + key)

    async def close(self) -> None:
        await self.client.aclose()


def create_recovery_store(config: Settings) -> KeyValueStore:
    """Build the store named by RECOVERY_STORE"""
    if config.RECOVERY_STORE == "redis":
        logger.info("Recovery markers stored in Redis")
        return RedisKeyValueStore.from_url(config.REDIS_URL)
    if config.RECOVERY_STORE == "file":
        logger.info(f"Recovery markers stored in {config.RECOVERY_FILE_PATH}")
        return JsonFileKeyValueStore(config.RECOVERY_FILE_PATH)
    return MemoryKeyValueStore()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecoveryMonitor:
    def __init__(
        self,
        store: KeyValueStore,
        key: str = "pendingPayment",
        staleness_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.key = key
        self.staleness_seconds = staleness_seconds
        self.clock = clock

    async def mark(self, invoice_id: str, amount: Decimal, payment_method: str) -> RecoveryMarker:
        marker = RecoveryMarker(
            invoice_id=invoice_id,
            amount=amount,
            payment_method=payment_method,
            timestamp=self.clock(),
        )
        await self.store.set(self.key, marker.model_dump_json())
        logger.debug(f"Recovery marker set for invoice {invoice_id} ({self.key})")
        return marker

    async def clear(self) -> None:
        await self.store.delete(self.key)
        logger.debug(f"Recovery marker cleared ({self.key})")

    async def peek(self) -> Optional[RecoveryMarker]:
        raw = await self.store.get(self.key)
        if raw is None:
            return None
        return RecoveryMarker.model_validate_json(raw)

    def _age_seconds(self, marker: RecoveryMarker) -> float:
        stamp = marker.timestamp
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        return (self.clock() - stamp).total_seconds()

    async def reconcile(self, api: InvoiceApiClient) -> RecoveryOutcome:
        """Resolve a marker left behind by an interrupted settlement"""
        try:
            marker = await self.peek()
        except ValidationError as e:
            logger.warning(f"Unreadable recovery marker discarded: {e}")
            await self.clear()
            return RecoveryOutcome(
                action=RecoveryAction.DISCARDED_STALE,
                notice=Notice.warning("A saved payment record could not be read and was discarded"),
            )

        if marker is None:
            return RecoveryOutcome(action=RecoveryAction.NONE)

        if self._age_seconds(marker) > self.staleness_seconds:
            logger.info(f"Discarding stale recovery marker for invoice {marker.invoice_id}")
            await self.clear()
            return RecoveryOutcome(action=RecoveryAction.DISCARDED_STALE, marker=marker)

        try:
            invoice = await api.get_invoice(marker.invoice_id)
        except InvoiceNotFoundError:
            logger.info(f"Recovery: invoice {marker.invoice_id} no longer exists, clearing marker")
            await self.clear()
            return RecoveryOutcome(
                action=RecoveryAction.RESOLVED_ELSEWHERE,
                marker=marker,
                notice=Notice.info("The interrupted payment's invoice no longer exists", code="recovery_not_found"),
            )
        except CashierError as e:
            logger.warning(f"Recovery: could not check invoice {marker.invoice_id}: {e.message}")
            return RecoveryOutcome(
                action=RecoveryAction.VERIFY_MANUALLY,
                marker=marker,
                notice=Notice.warning(
                    f"A payment for invoice {marker.invoice_id} may have been interrupted. "
                    f"Please verify it manually. ({e.message})",
                    code="recovery_verify",
                ),
            )

        if invoice.status == InvoiceStatus.PAID.value:
            logger.info(f"Recovery: invoice {invoice.id} is paid, clearing marker")
            await self.clear()
            return RecoveryOutcome(
                action=RecoveryAction.CONFIRMED_PAID,
                marker=marker,
                notice=Notice.info(
                    f"Previous payment for invoice #{invoice.display_number} was completed successfully",
                    code="recovery_confirmed",
                ),
            )

        logger.warning(f"Recovery: invoice {invoice.id} is {invoice.status}, marker kept")
        return RecoveryOutcome(
            action=RecoveryAction.VERIFY_MANUALLY,
            marker=marker,
            notice=Notice.warning(
                f"A payment of {marker.amount} for invoice #{invoice.display_number} may have been "
                f"interrupted. The invoice is {invoice.status}, please verify it manually.",
                code="recovery_verify",
            ),
        )
