"""
Trigger settings repository — which conditions an organization has enabled.

Settings are seeded from the RuleSet on first read. Conditions that are
noisy without tuning start disabled.
"""

from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cashguard.alerting.rules import RuleSet
from cashguard.db.models import TriggerSetting

DEFAULT_DISABLED = frozenset({
    "high-churn-rate",
    "failed-payments",
    "subscription-cancellations",
    "data-sync-delays",
})


class TriggerSettingsRepository:

    async def list_for_org(self, db: AsyncSession, organization_id: str) -> Sequence[TriggerSetting]:
        result = await db.execute(
            select(TriggerSetting).where(TriggerSetting.organization_id == organization_id)
        )
        return result.scalars().all()

    async def get_or_create_defaults(
        self, db: AsyncSession, organization_id: str, rules: RuleSet
    ) -> dict[str, bool]:
        """condition_id → enabled for every rule, inserting missing rows."""
        existing = {s.condition_id: s for s in await self.list_for_org(db, organization_id)}
        created = False
        for rule in rules:
            if rule.condition_id not in existing:
                setting = TriggerSetting(
                    organization_id=organization_id,
                    condition_id=rule.condition_id,
                    is_enabled=rule.condition_id not in DEFAULT_DISABLED,
                )
                db.add(setting)
                existing[rule.condition_id] = setting
                created = True
        if created:
            await db.flush()
        return {cid: existing[cid].is_enabled for cid in rules.condition_ids}

    async def enabled_condition_ids(
        self, db: AsyncSession, organization_id: str, rules: RuleSet
    ) -> list[str]:
        settings = await self.get_or_create_defaults(db, organization_id, rules)
        return [cid for cid, enabled in settings.items() if enabled]

    async def update(
        self,
        db: AsyncSession,
        organization_id: str,
        changes: Iterable[tuple[str, bool]],
        rules: RuleSet,
    ) -> dict[str, bool]:
        """Apply (condition_id, enabled) pairs. Unknown ids raise UnknownConditionError."""
        changes = list(changes)
        rules.select([cid for cid, _ in changes])

        await self.get_or_create_defaults(db, organization_id, rules)
        by_id = {s.condition_id: s for s in await self.list_for_org(db, organization_id)}
        for condition_id, enabled in changes:
            by_id[condition_id].is_enabled = enabled
        await db.flush()
        return {cid: by_id[cid].is_enabled for cid in rules.condition_ids}


trigger_settings_repo = TriggerSettingsRepository()
