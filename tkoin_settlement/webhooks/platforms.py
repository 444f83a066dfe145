"""Registry of sovereign platforms and their webhook credentials."""

from __future__ import annotations

import logging
import secrets

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from tkoin_settlement.errors import NotFoundError, ValidationError, WebhookAuthenticationError
from tkoin_settlement.ledger.models import SovereignPlatform

logger = logging.getLogger(__name__)


def generate_secret() -> str:
    return secrets.token_hex(32)


class PlatformRegistry:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.SessionLocal = session_factory

    def register_platform(
        self,
        platform_id: str,
        name: str,
        webhook_url: str | None = None,
        api_secret: str | None = None,
        webhook_secret: str | None = None,
        webhook_enabled: bool = True,
    ) -> SovereignPlatform:
        """Register a platform; secrets are generated when not supplied."""
        if not platform_id or not name:
            raise ValidationError("platform_id and name are required")
        if webhook_url and not webhook_url.startswith(("https://", "http://")):
            raise ValidationError(f"Invalid webhook URL: {webhook_url!r}")

        with self.SessionLocal.begin() as session:
            if session.get(SovereignPlatform, platform_id) is not None:
                raise ValidationError(f"Platform '{platform_id}' already exists")
            platform = SovereignPlatform(
                id=platform_id,
                name=name,
                api_secret=api_secret or generate_secret(),
                webhook_url=webhook_url,
                webhook_secret=webhook_secret or generate_secret(),
                webhook_enabled=webhook_enabled,
                is_active=True,
            )
            session.add(platform)
        logger.info("Platform registered: id=%s name=%s", platform_id, name)
        return platform

    def get_platform(self, platform_id: str) -> SovereignPlatform | None:
        with self.SessionLocal() as session:
            return session.get(SovereignPlatform, platform_id)

    def require_platform(self, platform_id: str) -> SovereignPlatform:
        platform = self.get_platform(platform_id)
        if platform is None:
            raise NotFoundError(f"Platform '{platform_id}' not found", platform_id=platform_id)
        return platform

    def require_active(self, platform_id: str) -> SovereignPlatform:
        """Platform for an inbound request; unknown or inactive platforms fail authentication."""
        platform = self.get_platform(platform_id)
        if platform is None or not platform.is_active:
            raise WebhookAuthenticationError(
                "Unknown or inactive platform", platform_id=platform_id
            )
        return platform

    def set_active(self, platform_id: str, is_active: bool) -> None:
        with self.SessionLocal.begin() as session:
            result = session.execute(
                update(SovereignPlatform)
                .where(SovereignPlatform.id == platform_id)
                .values(is_active=is_active)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Platform '{platform_id}' not found", platform_id=platform_id)
        logger.info("Platform %s active=%s", platform_id, is_active)

    def list_platforms(self, active_only: bool = False) -> list[SovereignPlatform]:
        stmt = select(SovereignPlatform).order_by(SovereignPlatform.id)
        if active_only:
            stmt = stmt.where(SovereignPlatform.is_active.is_(True))
        with self.SessionLocal() as session:
            return list(session.execute(stmt).scalars().all())
