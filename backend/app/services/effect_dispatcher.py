"""
Effect Dispatcher.

Sends the orchestrator's pending effects after the core transaction has
committed. Each effect runs in its own short transaction; a failure is logged,
captured in the dead-letter queue and never propagated.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.domain.shipments.effects import Effect, RecordMargin, NOTIFICATION_EFFECTS, effect_from_payload
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.services.margin_recorder import MarginRecorder
from backend.app.services.notification_emitter import NotificationEmitter, InAppNotificationEmitter

logger = logging.getLogger(__name__)


class EffectDispatcher:

    def __init__(self, db: AsyncSession, emitter: Optional[NotificationEmitter] = None):
        self.db = db
        self.emitter = emitter or InAppNotificationEmitter()

    async def _handle(self, effect: Effect):
        if isinstance(effect, RecordMargin):
            await MarginRecorder.record(
                self.db,
                shipment_id=effect.shipment_id,
                customer_price=effect.customer_price,
                courier_cost=effect.courier_cost,
                tracking_id=effect.tracking_id,
            )
        elif isinstance(effect, NOTIFICATION_EFFECTS):
            await self.emitter.emit(self.db, effect)
        else:
            logger.warning("No handler for effect %s", effect.kind)

    async def dispatch(self, effects: Iterable[Effect]) -> int:
        """Send every effect. Returns how many failed."""
        failed = 0
        for effect in effects:
            try:
                await self._handle(effect)
                await self.db.commit()
            except Exception as e:
                failed += 1
                await self.db.rollback()
                logger.exception("Effect %s failed", effect.kind)
                await self._dead_letter(effect, e)
        return failed

    async def _dead_letter(self, effect: Effect, error: Exception):
        try:
            self.db.add(DeadLetterQueue(
                task_name=f"effect.{effect.kind}",
                error_message=f"{type(error).__name__}: {error}",
                payload=effect.payload(),
                status=DLQStatus.FAILED,
            ))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Could not dead-letter effect %s", effect.kind)

    async def redeliver(self, item: DeadLetterQueue) -> bool:
        """Retry one dead-lettered effect in place. Returns True once it goes through."""
        item_id = item.id
        attempts = (item.retry_count or 0) + 1
        kind = item.task_name.removeprefix("effect.")
        try:
            await self._handle(effect_from_payload(kind, item.payload or {}))
        except Exception as e:
            await self.db.rollback()
            logger.exception("Redelivery of DLQ item %s failed", item_id)
            item = await self.db.get(DeadLetterQueue, item_id)
            item.status = DLQStatus.FAILED
            item.error_message = f"{type(e).__name__}: {e}"
            succeeded = False
        else:
            item.status = DLQStatus.PROCESSED
            succeeded = True
            logger.info("DLQ item %s redelivered", item_id)

        item.retry_count = attempts
        item.last_retry_at = datetime.now(timezone.utc)
        await self.db.commit()
        return succeeded
