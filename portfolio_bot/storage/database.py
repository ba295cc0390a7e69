"""Database storage for security events and position history."""
from datetime import datetime, timezone
from typing import Iterable, List, Optional

import structlog
from sqlalchemy import JSON, Column, DateTime, Numeric, String, Text, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from portfolio_bot.core.config import database_config
from portfolio_bot.core.models import Position, PositionStatus, SecurityEvent, Severity

logger = structlog.get_logger(__name__)

Base = declarative_base()


class SecurityEventModel(Base):
    """SQLAlchemy model for security events."""
    __tablename__ = 'security_events'

    id = Column(String, primary_key=True)
    type = Column(String, nullable=False, index=True)
    severity = Column(String, nullable=False, index=True)
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    metadata_json = Column(JSON, default=dict)


class PositionModel(Base):
    """SQLAlchemy model for strategy positions."""
    __tablename__ = 'positions'

    id = Column(String, primary_key=True)
    strategy = Column(String, nullable=False, index=True)
    token_in = Column(String, nullable=False)
    token_out = Column(String, nullable=False)
    amount_in = Column(Numeric(36, 18), nullable=False)
    amount_out = Column(Numeric(36, 18), default=0)
    entry_price = Column(Numeric(36, 18), nullable=False)
    current_price = Column(Numeric(36, 18), nullable=False)
    stop_loss_pct = Column(Numeric(36, 18), nullable=True)
    take_profit_pct = Column(Numeric(36, 18), nullable=True)
    status = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column(JSON, default=dict)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Database:
    """Async database interface."""

    def __init__(self, db_url: Optional[str] = None):
        db_url = db_url or database_config.database_url

        # Convert sqlite URL to async
        if db_url.startswith('sqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.db_url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, echo=False)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.initialized", url=self.db_url.split("@")[-1])

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Security event operations
    async def save_security_event(self, event: SecurityEvent):
        """Save a security event; events are write-once so existing ids are kept."""
        await self.save_security_events([event])

    async def save_security_events(self, events: Iterable[SecurityEvent]) -> int:
        """Save a batch of security events and return how many were new."""
        saved = 0
        async with self.session_maker() as session:
            for event in events:
                if await session.get(SecurityEventModel, event.id) is not None:
                    continue
                session.add(SecurityEventModel(
                    id=event.id,
                    type=event.type,
                    severity=event.severity.value,
                    message=event.message,
                    timestamp=event.timestamp,
                    metadata_json=event.model_dump(mode="json")["metadata"],
                ))
                saved += 1
            await session.commit()
        return saved

    async def get_security_events(
        self,
        limit: int = 100,
        severity: Optional[Severity] = None,
        event_type: Optional[str] = None,
    ) -> List[SecurityEvent]:
        """Get security events, most recent first."""
        async with self.session_maker() as session:
            query = select(SecurityEventModel).order_by(SecurityEventModel.timestamp.desc())

            if severity:
                query = query.where(SecurityEventModel.severity == Severity(severity).value)
            if event_type:
                query = query.where(SecurityEventModel.type == event_type)

            result = await session.execute(query.limit(limit))
            return [self._event_from_model(e) for e in result.scalars().all()]

    # Position operations
    async def save_positions(self, positions: Iterable[Position]) -> int:
        """Insert or update positions by id; returns the number written."""
        written = 0
        async with self.session_maker() as session:
            for position in positions:
                db_position = await session.get(PositionModel, position.id)

                if db_position is None:
                    db_position = PositionModel(
                        id=position.id,
                        strategy=position.strategy,
                        token_in=position.token_in,
                        token_out=position.token_out,
                        amount_in=position.amount_in,
                        entry_price=position.entry_price,
                        stop_loss_pct=position.stop_loss_pct,
                        take_profit_pct=position.take_profit_pct,
                        created_at=position.created_at,
                    )
                    session.add(db_position)

                db_position.amount_out = position.amount_out
                db_position.current_price = position.current_price
                db_position.status = position.status.value
                db_position.updated_at = position.updated_at
                db_position.closed_at = position.closed_at
                db_position.metadata_json = position.metadata
                written += 1

            await session.commit()
        return written

    async def get_positions(
        self,
        strategy: Optional[str] = None,
        status: Optional[PositionStatus] = None,
        limit: int = 500,
    ) -> List[Position]:
        """Get positions with optional filters, oldest first."""
        async with self.session_maker() as session:
            query = select(PositionModel).order_by(PositionModel.created_at.asc()).limit(limit)

            if strategy:
                query = query.where(PositionModel.strategy == strategy)
            if status:
                query = query.where(PositionModel.status == PositionStatus(status).value)

            result = await session.execute(query)
            return [self._position_from_model(p) for p in result.scalars().all()]

    # Helpers
    def _event_from_model(self, model: SecurityEventModel) -> SecurityEvent:
        """Convert DB model to SecurityEvent."""
        return SecurityEvent(
            id=model.id,
            type=model.type,
            severity=Severity(model.severity),
            message=model.message,
            timestamp=_as_utc(model.timestamp),
            metadata=model.metadata_json or {},
        )

    def _position_from_model(self, model: PositionModel) -> Position:
        """Convert DB model to Position object."""
        return Position(
            id=model.id,
            strategy=model.strategy,
            token_in=model.token_in,
            token_out=model.token_out,
            amount_in=model.amount_in,
            amount_out=model.amount_out or 0,
            entry_price=model.entry_price,
            current_price=model.current_price,
            stop_loss_pct=model.stop_loss_pct,
            take_profit_pct=model.take_profit_pct,
            status=PositionStatus(model.status),
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
            closed_at=_as_utc(model.closed_at),
            metadata=model.metadata_json or {},
        )
