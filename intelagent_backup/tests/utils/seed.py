from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intelagent_backup.domain.models import (
    AiInsight,
    AuditLog,
    ChatbotLog,
    License,
    Notification,
    Organization,
    Team,
    TeamMember,
    UsageMetric,
)
from intelagent_backup.persistence.tables import TableRegistry


async def seed_platform(sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    # A small but type-diverse dataset: JSON, decimals, dates and timestamps.
    now = datetime.now(timezone.utc)
    async with sessionmaker() as session:
        session.add_all(
            [
                License(
                    license_key="LIC-001",
                    customer_name="Acme",
                    email="ops@acme.test",
                    plan="pro",
                    products=["chatbot", "insights"],
                    organization_id="org-1",
                    expires_at=now + timedelta(days=365),
                ),
                License(license_key="LIC-002", customer_name="Globex", plan="starter"),
                ChatbotLog(
                    license_key="LIC-001",
                    session_id="sess-1",
                    customer_message="hello",
                    chatbot_response="hi there",
                    intent_detected="greeting",
                ),
                UsageMetric(
                    license_key="LIC-001",
                    product="chatbot",
                    period_start=date(2026, 9, 1),
                    period_end=date(2026, 9, 30),
                    api_calls=1200,
                    tokens_used=987654321,
                    cost_usd=Decimal("12.3456"),
                ),
                Notification(
                    id="notif-1",
                    license_key="LIC-001",
                    type="billing",
                    title="Invoice ready",
                    metadata_json={"invoice": "INV-9", "lines": [1, 2]},
                ),
                AiInsight(
                    id="insight-1",
                    license_key="LIC-001",
                    insight_type="trend",
                    title="Usage up",
                    confidence=0.75,
                    data={"delta": 0.2},
                ),
                Organization(id="org-1", name="Acme Org", license_key="LIC-001", settings={"sso": False}),
                Team(id="team-1", organization_id="org-1", name="Support", permissions=["read"]),
                TeamMember(
                    id="member-1",
                    organization_id="org-1",
                    team_id="team-1",
                    user_id="user-1",
                    email="agent@acme.test",
                    role="admin",
                    joined_at=now,
                ),
                AuditLog(action="license.created", resource_type="license", resource_id="LIC-001", created_at=now),
                AuditLog(
                    action="license.updated",
                    resource_type="license",
                    resource_id="LIC-001",
                    created_at=now - timedelta(days=90),
                ),
            ]
        )
        await session.commit()


async def snapshot(registry: TableRegistry, names: Iterable[str]) -> dict[str, list[dict[str, Any]]]:
    return {name: await registry.get(name).fetch_all() for name in names}
