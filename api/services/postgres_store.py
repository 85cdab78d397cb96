"""PostgreSQL-backed market store (SQLAlchemy asyncio + asyncpg)."""

import asyncio
import logging
from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy import Text, cast, func, not_, or_, and_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

from api.db.base import (
    AsyncSessionLocal,
    Gift as GiftRow,
    Purchase as PurchaseRow,
    User as UserRow,
)
from api.services.pricing_service import stars_to_currency
from api.services.settlement_engine import (
    Gift,
    MarketStore,
    Purchase,
    StorageError,
    User,
    validate_id,
)

logger = logging.getLogger(__name__)


@contextmanager
def _storage_errors(action: str):
    """Translate database and connection failures into StorageError."""
    try:
        yield
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
        logger.error(f"Storage failure during {action}: {e}")
        raise StorageError(f"{action} failed: {e}") from e


def _gift_from_row(row) -> Gift:
    return Gift(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        description=row.description or "",
        price_stars=row.stars,
        for_sale=row.for_sale,
        sold=row.sold,
    )


def _user_from_row(row) -> User:
    return User(
        id=row.id,
        display_name=row.username,
        avatar_url=row.avatar or "",
        star_balance=row.star_balance,
        owned_gift_ids=set(row.owned_gift_ids or []),
    )


def _purchase_from_row(row) -> Purchase:
    return Purchase(
        gift_id=row.gift_id,
        buyer_id=row.buyer_id,
        seller_id=row.seller_id,
        amount_in_currency=row.amount_rub,
        price_stars=row.stars,
        telegram_payment_charge_id=row.telegram_payment_charge_id,
        created_at=row.created_at,
    )


class PostgresMarketStore(MarketStore):
    """
    MarketStore on PostgreSQL.

    Settlement runs in one transaction whose first statement is a
    conditional UPDATE on gifts.sold, so the row lock taken there
    serializes concurrent confirmations of the same gift.
    """

    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    # Statements shared by several operations

    @staticmethod
    def _ensure_user_stmt(user_id: str):
        return pg_insert(UserRow).values(id=user_id).on_conflict_do_nothing(index_elements=[UserRow.id])

    @staticmethod
    def _credit_stmt(user_id: str, amount: int):
        stmt = pg_insert(UserRow).values(id=user_id, star_balance=amount)
        return stmt.on_conflict_do_update(
            index_elements=[UserRow.id],
            set_={"star_balance": UserRow.star_balance + stmt.excluded.star_balance},
        ).returning(UserRow.star_balance)

    @staticmethod
    def _add_owned_gift_stmt(user_id: str, gift_id: str):
        gift_ref = cast(gift_id, Text)
        stmt = pg_insert(UserRow).values(id=user_id, owned_gift_ids=[gift_id])
        return stmt.on_conflict_do_update(
            index_elements=[UserRow.id],
            set_={
                "owned_gift_ids": func.array_append(
                    func.array_remove(UserRow.owned_gift_ids, gift_ref), gift_ref
                )
            },
        )

    @staticmethod
    def _remove_owned_gift_stmt(user_id: str, gift_id: str):
        return (
            update(UserRow)
            .where(UserRow.id == user_id)
            .values(owned_gift_ids=func.array_remove(UserRow.owned_gift_ids, cast(gift_id, Text)))
            .execution_options(synchronize_session=False)
        )

    # Gifts

    async def get_gift(self, gift_id: str) -> Optional[Gift]:
        with _storage_errors("get_gift"):
            async with self._session_factory() as session:
                row = await session.get(GiftRow, gift_id)
                return _gift_from_row(row) if row else None

    async def create_gift(self, gift: Gift) -> Gift:
        validate_id(gift.id, "gift id")
        with _storage_errors("create_gift"):
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(self._ensure_user_stmt(gift.owner_id))
                    session.add(GiftRow(
                        id=gift.id,
                        owner_id=gift.owner_id,
                        name=gift.name,
                        description=gift.description,
                        stars=gift.price_stars,
                        for_sale=gift.for_sale and not gift.sold,
                        sold=gift.sold,
                    ))
                    await session.flush()
                    await session.execute(self._add_owned_gift_stmt(gift.owner_id, gift.id))
        return await self.get_gift(gift.id)

    async def upsert_gift(self, gift: Gift) -> Gift:
        validate_id(gift.id, "gift id")
        with _storage_errors("upsert_gift"):
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(self._ensure_user_stmt(gift.owner_id))
                    stmt = pg_insert(GiftRow).values(
                        id=gift.id,
                        owner_id=gift.owner_id,
                        name=gift.name,
                        description=gift.description,
                        stars=gift.price_stars,
                        for_sale=gift.for_sale and not gift.sold,
                        sold=gift.sold,
                    )
                    # sold is sticky: once true it survives any update
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[GiftRow.id],
                        set_={
                            "owner_id": stmt.excluded.owner_id,
                            "name": stmt.excluded.name,
                            "description": stmt.excluded.description,
                            "stars": stmt.excluded.stars,
                            "for_sale": and_(stmt.excluded.for_sale, not_(GiftRow.sold)),
                            "sold": or_(GiftRow.sold, stmt.excluded.sold),
                        },
                    ).returning(*GiftRow.__table__.c)
                    row = (await session.execute(stmt)).one()
                    return _gift_from_row(row)

    async def list_gifts_for_sale(self) -> List[Gift]:
        with _storage_errors("list_gifts_for_sale"):
            async with self._session_factory() as session:
                stmt = (
                    select(GiftRow)
                    .where(GiftRow.for_sale.is_(True), GiftRow.sold.is_(False))
                    .order_by(GiftRow.created_at.desc())
                )
                result = await session.execute(stmt)
                return [_gift_from_row(row) for row in result.scalars().all()]

    async def list_gifts_owned_by(self, user_id: str) -> List[Gift]:
        with _storage_errors("list_gifts_owned_by"):
            async with self._session_factory() as session:
                user = await session.get(UserRow, user_id)
                if user is None or not user.owned_gift_ids:
                    return []
                stmt = select(GiftRow).where(GiftRow.id.in_(user.owned_gift_ids)).order_by(GiftRow.id)
                result = await session.execute(stmt)
                return [_gift_from_row(row) for row in result.scalars().all()]

    # Users

    async def get_user(self, user_id: str) -> Optional[User]:
        with _storage_errors("get_user"):
            async with self._session_factory() as session:
                row = await session.get(UserRow, user_id)
                return _user_from_row(row) if row else None

    async def upsert_user(self, user: User) -> User:
        with _storage_errors("upsert_user"):
            async with self._session_factory() as session:
                async with session.begin():
                    stmt = pg_insert(UserRow).values(
                        id=user.id,
                        username=user.display_name,
                        avatar=user.avatar_url or "",
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[UserRow.id],
                        set_={"username": stmt.excluded.username, "avatar": stmt.excluded.avatar},
                    ).returning(*UserRow.__table__.c)
                    row = (await session.execute(stmt)).one()
                    return _user_from_row(row)

    async def credit_user(self, user_id: str, amount: int) -> int:
        if amount < 0:
            raise ValueError("Credit amount cannot be negative")
        with _storage_errors("credit_user"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(self._credit_stmt(user_id, amount))
                    return result.scalar_one()

    # Purchases

    async def append_purchase(self, purchase: Purchase) -> Purchase:
        with _storage_errors("append_purchase"):
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(self._purchase_row(purchase))
        return purchase

    async def list_purchases(self, gift_id: Optional[str] = None) -> List[Purchase]:
        with _storage_errors("list_purchases"):
            async with self._session_factory() as session:
                stmt = select(PurchaseRow).order_by(PurchaseRow.created_at)
                if gift_id is not None:
                    stmt = stmt.where(PurchaseRow.gift_id == gift_id)
                result = await session.execute(stmt)
                return [_purchase_from_row(row) for row in result.scalars().all()]

    @staticmethod
    def _purchase_row(purchase: Purchase) -> PurchaseRow:
        return PurchaseRow(
            gift_id=purchase.gift_id,
            buyer_id=purchase.buyer_id,
            seller_id=purchase.seller_id,
            amount_rub=purchase.amount_in_currency,
            stars=purchase.price_stars,
            telegram_payment_charge_id=purchase.telegram_payment_charge_id,
            created_at=purchase.created_at,
        )

    # Settlement

    async def settle_sale(
        self,
        gift_id: str,
        buyer_id: str,
        telegram_payment_charge_id: Optional[str] = None,
    ) -> Optional[Purchase]:
        with _storage_errors("settle_sale"):
            async with self._session_factory() as session:
                async with session.begin():
                    # Compare-and-swap on sold; zero rows means missing or already sold
                    stmt = (
                        update(GiftRow)
                        .where(GiftRow.id == gift_id, GiftRow.sold.is_(False))
                        .values(sold=True, for_sale=False)
                        .returning(GiftRow.owner_id, GiftRow.stars)
                        .execution_options(synchronize_session=False)
                    )
                    row = (await session.execute(stmt)).first()
                    if row is None:
                        return None

                    seller_id, stars = row.owner_id, row.stars
                    purchase = Purchase(
                        gift_id=gift_id,
                        buyer_id=buyer_id,
                        seller_id=seller_id,
                        amount_in_currency=stars_to_currency(stars),
                        price_stars=stars,
                        telegram_payment_charge_id=telegram_payment_charge_id,
                    )
                    session.add(self._purchase_row(purchase))
                    await session.flush()

                    await session.execute(self._credit_stmt(seller_id, stars))
                    await session.execute(self._remove_owned_gift_stmt(seller_id, gift_id))
                    await session.execute(self._add_owned_gift_stmt(buyer_id, gift_id))

        return purchase
