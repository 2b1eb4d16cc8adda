"""Credit package catalog (read-only at runtime)."""

from __future__ import annotations

import logging
from typing import Dict, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_package import CreditPackage
from services.errors import PackageNotFound

logger = logging.getLogger(__name__)


DEFAULT_PACKAGES: List[Dict] = [
    {"name": "Free", "credits": 1000, "bonus_credits": 0, "price": 0, "popular": False, "savings": 0, "sort_order": 1},
    {"name": "Pro", "credits": 5000, "bonus_credits": 0, "price": 2999, "popular": True, "savings": 0, "sort_order": 2},
    {"name": "Pro+", "credits": 15000, "bonus_credits": 0, "price": 7999, "popular": False, "savings": 20, "sort_order": 3},
    {"name": "Enterprise", "credits": 0, "bonus_credits": 0, "price": 0, "popular": False, "savings": 0, "sort_order": 4},
]


async def ensure_default_packages(db: AsyncSession) -> int:
    """Insert any missing default package by name. Existing rows are left untouched."""
    result = await db.execute(select(CreditPackage.name))
    existing = set(result.scalars().all())
    created = 0
    for package in DEFAULT_PACKAGES:
        if package["name"] in existing:
            continue
        db.add(
            CreditPackage(
                name=package["name"],
                credits=package["credits"],
                bonus_credits=package["bonus_credits"],
                total_credits=package["credits"] + package["bonus_credits"],
                price=package["price"],
                currency="USD",
                popular=package["popular"],
                savings=package["savings"],
                sort_order=package["sort_order"],
                active=True,
            )
        )
        created += 1
    if created:
        await db.commit()
        logger.info("Seeded %s default credit packages", created)
    return created


async def list_packages(db: AsyncSession) -> List[CreditPackage]:
    result = await db.execute(
        select(CreditPackage)
        .where(CreditPackage.active.is_(True))
        .order_by(CreditPackage.sort_order, CreditPackage.price)
    )
    return list(result.scalars().all())


async def get_package(db: AsyncSession, package_id: str) -> CreditPackage:
    result = await db.execute(
        select(CreditPackage).where(
            CreditPackage.id == package_id,
            CreditPackage.active.is_(True),
        )
    )
    package = result.scalar_one_or_none()
    if package is None:
        raise PackageNotFound(f"Package {package_id} not found")
    return package
