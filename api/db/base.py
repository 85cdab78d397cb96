from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import ARRAY, BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from config.settings import POSTGRES_URL

# statement_cache_size=0 is required for pgbouncer/Supavisor compatibility
# (they don't support prepared statements in transaction mode)
engine = create_async_engine(
    POSTGRES_URL,
    echo=False,
    pool_timeout=10,
    connect_args={"prepared_statement_cache_size": 0, "statement_cache_size": 0, "timeout": 10},
)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(AsyncAttrs, DeclarativeBase):
    pass

class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("star_balance >= 0", name="users_star_balance_non_negative"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)  # Telegram user id
    username: Mapped[Optional[str]] = mapped_column(Text)
    avatar: Mapped[str] = mapped_column(Text, default="", server_default="")
    star_balance: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0")
    owned_gift_ids: Mapped[List[str]] = mapped_column(ARRAY(Text), default=list, server_default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

class Gift(Base):
    __tablename__ = "gifts"
    __table_args__ = (
        CheckConstraint("stars > 0", name="gifts_stars_positive"),
        CheckConstraint("NOT (sold AND for_sale)", name="gifts_sold_not_for_sale"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)  # gift-<ms>-<hex>, never contains ':'
    owner_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", server_default="")
    stars: Mapped[int] = mapped_column(Integer, nullable=False)
    for_sale: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    sold: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

class Purchase(Base):
    __tablename__ = "purchases"

    id: Mapped[UUID] = mapped_column(PG_UUID, primary_key=True, default=uuid4)
    gift_id: Mapped[str] = mapped_column(ForeignKey("gifts.id", ondelete="RESTRICT"), unique=True, nullable=False)  # one sale per gift
    buyer_id: Mapped[str] = mapped_column(Text, nullable=False)
    seller_id: Mapped[str] = mapped_column(Text, nullable=False)
    amount_rub: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    stars: Mapped[int] = mapped_column(Integer, nullable=False)
    telegram_payment_charge_id: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


async def init_models():
    """Create missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
