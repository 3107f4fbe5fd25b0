from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from tenantgate.logging import get_logger
from tenantgate.service.email import EmailService
from tenantgate.service.errors import (
    ConflictError,
    ExpiredError,
    PrincipalNotFoundError,
    ServerError,
)
from tenantgate.service.otp import OtpChallengeManager, OtpPurpose
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.models import DeletionState, Principal, Tenant

logger = get_logger(__name__)

_CLEARED_DELETION = {
    "deletion_state": DeletionState.ACTIVE,
    "deletion_reason": None,
    "deletion_requested_at": None,
    "deletion_scheduled_at": None,
}


class AccountDeletionService:
    """active -> deletion_requested -> deletion_confirmed -> active (cancelled).

    Purging accounts past their scheduled date happens outside this service.
    """

    def __init__(
        self,
        store: MemoryStore,
        otp: OtpChallengeManager,
        email: EmailService,
        *,
        grace_days: int = 15,
    ) -> None:
        self.store = store
        self.otp = otp
        self.email = email
        self.grace_days = grace_days

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def request(
        self, tenant: Tenant, principal: Principal, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        if principal.deletion_state == DeletionState.CONFIRMED:
            raise ConflictError("Account deletion is already scheduled")
        otc = self.otp.issue(
            principal, OtpPurpose.DELETION_CONFIRM, meta={"reason": reason or ""}
        )
        requested_at = self._now()
        updated = self.store.update_principal(
            principal.id,
            {
                "deletion_state": DeletionState.REQUESTED,
                "deletion_reason": reason,
                "deletion_requested_at": requested_at,
                "deletion_scheduled_at": None,
            },
            when=lambda p: p.deletion_state != DeletionState.CONFIRMED,
        )
        if updated is None:
            self.store.clear_one_time_code(principal.id, OtpPurpose.DELETION_CONFIRM.value, otc.code)
            raise ConflictError("Account deletion is already scheduled")
        sent = await asyncio.to_thread(
            self.email.send_one_time_code,
            principal.email,
            otc.code,
            OtpPurpose.DELETION_CONFIRM.value,
            tenant_name=tenant.name,
            ttl_minutes=int(self.otp.ttl_for(OtpPurpose.DELETION_CONFIRM).total_seconds() // 60),
        )
        if not sent:
            # Undo the request; the code never reached the user
            self.store.update_principal(
                principal.id,
                {
                    "deletion_state": principal.deletion_state,
                    "deletion_reason": principal.deletion_reason,
                    "deletion_requested_at": principal.deletion_requested_at,
                    "deletion_scheduled_at": principal.deletion_scheduled_at,
                },
                when=lambda p: (
                    p.deletion_state == DeletionState.REQUESTED
                    and p.deletion_requested_at == requested_at
                ),
            )
            self.store.clear_one_time_code(principal.id, OtpPurpose.DELETION_CONFIRM.value, otc.code)
            logger.error("deletion_request_rolled_back", principal_id=principal.id, tenant_id=tenant.id)
            raise ServerError(
                "Could not send the confirmation code. Please try again later.",
                status_code=503,
            )
        logger.info("deletion_requested", principal_id=principal.id, tenant_id=tenant.id)
        return self.status(updated)

    async def confirm(self, tenant: Tenant, principal: Principal, code: str) -> Dict[str, Any]:
        now = self._now()
        updated = self.otp.consume(
            tenant.id,
            principal.email,
            OtpPurpose.DELETION_CONFIRM,
            code,
            updates={
                "deletion_state": DeletionState.CONFIRMED,
                "deletion_scheduled_at": now + timedelta(days=self.grace_days),
            },
        )
        logger.info(
            "deletion_confirmed",
            principal_id=updated.id,
            tenant_id=tenant.id,
            scheduled_at=updated.deletion_scheduled_at.isoformat(),
        )
        scheduled_for = updated.deletion_scheduled_at.strftime("%Y-%m-%d")
        await asyncio.to_thread(
            self.email.send_deletion_scheduled,
            updated.email,
            tenant_name=tenant.name,
            scheduled_for=scheduled_for,
        )
        if tenant.notify_on_user_deletion and tenant.support_email:
            await asyncio.to_thread(
                self.email.send_deletion_notice_to_support,
                tenant.support_email,
                tenant_name=tenant.name,
                user_email=updated.email,
                reason=updated.deletion_reason,
            )
        return self.status(updated)

    def cancel(self, principal_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Revert a confirmed deletion while the grace period is still running."""
        moment = now or self._now()

        def _cancellable(p: Principal) -> bool:
            return (
                p.deletion_state == DeletionState.CONFIRMED
                and p.deletion_scheduled_at is not None
                and moment < p.deletion_scheduled_at
            )

        updated = self.store.update_principal(principal_id, dict(_CLEARED_DELETION), when=_cancellable)
        if updated is not None:
            logger.info("deletion_cancelled", principal_id=principal_id)
            return self.status(updated)

        current = self.store.get_principal(principal_id)
        if current is None:
            raise PrincipalNotFoundError("User not found")
        if current.deletion_state != DeletionState.CONFIRMED:
            raise ConflictError("No scheduled deletion to cancel")
        logger.info("deletion_cancel_too_late", principal_id=principal_id)
        raise ExpiredError("The grace period for cancelling this deletion has ended")

    def status(self, principal: Principal) -> Dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "state": principal.deletion_state,
            "requested_at": _iso(principal.deletion_requested_at),
            "scheduled_at": _iso(principal.deletion_scheduled_at),
            "reason": principal.deletion_reason,
            "grace_period_days": self.grace_days,
        }
