"""Database storage for contract records, wallets and run checkpoints."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, String, delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from clo_pipeline.core.config import settings
from clo_pipeline.core.models import Role, WalletHandle

logger = structlog.get_logger(__name__)

Base = declarative_base()

# Sub-documents merged key by key on update; every other key is overwritten
JSON_COLUMNS = ("contract_data", "contract_datum")
SCALAR_COLUMNS = ("status", "alias", "subtype")


class ContractModel(Base):
    """SQLAlchemy model for loan and CLO contract records."""
    __tablename__ = 'contracts'

    id = Column(String, primary_key=True)
    run_id = Column(String, nullable=True, index=True)
    contract_type = Column(String, nullable=False)  # LOAN | CLO
    subtype = Column(String, nullable=True)
    alias = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    contract_data = Column(JSON, default=dict)
    contract_datum = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True)


class WalletModel(Base):
    """SQLAlchemy model for created wallets."""
    __tablename__ = 'wallets'

    id = Column(Integer, primary_key=True, autoincrement=True)
    identity_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    role = Column(String, nullable=False)
    address = Column(String, nullable=False)
    required_balance = Column(BigInteger, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)


class CheckpointModel(Base):
    """SQLAlchemy model for run checkpoints."""
    __tablename__ = 'checkpoints'

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, nullable=False, index=True)
    phase = Column(Integer, nullable=False)
    run_state = Column(String, nullable=False)
    snapshot = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Database:
    """Async database interface."""

    def __init__(self, database_url: Optional[str] = None):
        # Convert SQLite URL to async version if needed
        db_url = database_url or settings.database.database_url
        if db_url.startswith('sqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///', 1)

        engine_kwargs: Dict[str, Any] = {"echo": False}
        if ":memory:" in db_url:
            # One shared connection, otherwise every session sees an empty database
            engine_kwargs["poolclass"] = StaticPool

        self.database_url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.initialized", url=self.database_url)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Contract operations
    async def save_contract(self, record: Dict[str, Any]) -> str:
        """Insert a contract record and return its id."""
        contract_id = record.get("id") or str(uuid4())
        async with self.session_maker() as session:
            session.add(ContractModel(
                id=contract_id,
                run_id=record.get("run_id"),
                contract_type=record["contract_type"],
                subtype=record.get("subtype"),
                alias=record.get("alias"),
                status=record.get("status", "pending"),
                contract_data=record.get("contract_data") or {},
                contract_datum=record.get("contract_datum") or {},
            ))
            await session.commit()

        logger.debug("database.contract_saved", contract_id=contract_id,
                     contract_type=record["contract_type"])
        return contract_id

    async def update_contract(self, contract_id: str, patch: Dict[str, Any]):
        """Apply a partial update to a contract record.

        JSON sub-documents are merged key by key; scalar columns are
        overwritten. Raises KeyError for an unknown id.
        """
        async with self.session_maker() as session:
            db_contract = await session.get(ContractModel, contract_id)
            if db_contract is None:
                raise KeyError(f"Contract not found: {contract_id}")

            for key, value in patch.items():
                if key in JSON_COLUMNS:
                    merged = dict(getattr(db_contract, key) or {})
                    merged.update(value or {})
                    setattr(db_contract, key, merged)
                elif key in SCALAR_COLUMNS:
                    setattr(db_contract, key, value)
                else:
                    # Loose keys land in the datum
                    datum = dict(db_contract.contract_datum or {})
                    datum[key] = value
                    db_contract.contract_datum = datum

            db_contract.updated_at = datetime.utcnow()
            await session.commit()

    async def get_contract(self, contract_id: str) -> Optional[Dict[str, Any]]:
        """Get a contract record by ID."""
        async with self.session_maker() as session:
            db_contract = await session.get(ContractModel, contract_id)
            if db_contract is None:
                return None
            return self._contract_to_dict(db_contract)

    async def get_contracts(
        self,
        run_id: Optional[str] = None,
        contract_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Get contract records with optional filters, oldest first."""
        async with self.session_maker() as session:
            query = select(ContractModel).order_by(ContractModel.created_at)
            if run_id:
                query = query.where(ContractModel.run_id == run_id)
            if contract_type:
                query = query.where(ContractModel.contract_type == contract_type)

            result = await session.execute(query)
            return [self._contract_to_dict(c) for c in result.scalars().all()]

    # Wallet operations
    async def save_wallets(self, handles: List[WalletHandle]):
        """Replace the stored wallet set."""
        async with self.session_maker() as session:
            await session.execute(delete(WalletModel))
            for handle in handles:
                session.add(WalletModel(
                    identity_id=handle.identity_id,
                    name=handle.name,
                    role=handle.role.value,
                    address=handle.address,
                    required_balance=handle.required_balance,
                ))
            await session.commit()
        logger.info("database.wallets_saved", count=len(handles))

    async def get_wallets(self) -> List[WalletHandle]:
        """Get stored wallets in creation order."""
        async with self.session_maker() as session:
            result = await session.execute(select(WalletModel).order_by(WalletModel.id))
            return [
                WalletHandle(
                    identity_id=w.identity_id,
                    name=w.name,
                    role=Role(w.role),
                    address=w.address,
                    required_balance=w.required_balance or 0,
                )
                for w in result.scalars().all()
            ]

    async def delete_all_wallets(self) -> int:
        """Delete every stored wallet; returns how many were removed."""
        async with self.session_maker() as session:
            result = await session.execute(delete(WalletModel))
            await session.commit()
        logger.info("database.wallets_deleted", count=result.rowcount)
        return result.rowcount

    # Checkpoint operations
    async def save_checkpoint(
        self,
        run_id: str,
        phase: int,
        run_state: str,
        snapshot: Dict[str, Any],
    ) -> int:
        """Store a run snapshot and return the checkpoint id."""
        async with self.session_maker() as session:
            checkpoint = CheckpointModel(
                run_id=run_id,
                phase=phase,
                run_state=run_state,
                snapshot=snapshot,
            )
            session.add(checkpoint)
            await session.commit()
            checkpoint_id = checkpoint.id

        logger.info("database.checkpoint_saved", run_id=run_id, phase=phase,
                    run_state=run_state, checkpoint_id=checkpoint_id)
        return checkpoint_id

    async def get_latest_checkpoint(self, run_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Most recent checkpoint, optionally restricted to one run."""
        async with self.session_maker() as session:
            query = select(CheckpointModel).order_by(CheckpointModel.id.desc()).limit(1)
            if run_id:
                query = query.where(CheckpointModel.run_id == run_id)

            result = await session.execute(query)
            checkpoint = result.scalar_one_or_none()
            if checkpoint is None:
                return None

            return {
                "id": checkpoint.id,
                "run_id": checkpoint.run_id,
                "phase": checkpoint.phase,
                "run_state": checkpoint.run_state,
                "snapshot": checkpoint.snapshot,
                "created_at": checkpoint.created_at,
            }

    # Helpers
    def _contract_to_dict(self, model: ContractModel) -> Dict[str, Any]:
        """Convert DB model to a plain record."""
        return {
            "id": model.id,
            "run_id": model.run_id,
            "contract_type": model.contract_type,
            "subtype": model.subtype,
            "alias": model.alias,
            "status": model.status,
            "contract_data": model.contract_data or {},
            "contract_datum": model.contract_datum or {},
            "created_at": model.created_at,
            "updated_at": model.updated_at,
        }
