"""Unit tests for database operations."""
import pytest

from clo_pipeline.core.models import Role, WalletHandle
from clo_pipeline.storage.database import Database


@pytest.fixture
def loan_record():
    """A persisted loan record as built by the loan phase."""
    return {
        "run_id": "run-1",
        "contract_type": "LOAN",
        "subtype": "Reserved",
        "alias": "Diamond Loan #1",
        "status": "pending",
        "contract_data": {"id": "LOAN-001", "principal": 500_000_000, "apr": 600},
        "contract_datum": {"balance": 516_360_000, "is_active": False},
    }


# =============================================================================
# Setup Tests
# =============================================================================

class TestDatabaseSetup:
    """Test database initialization."""

    def test_plain_sqlite_url_upgraded(self):
        db = Database("sqlite:///:memory:")
        assert db.database_url == "sqlite+aiosqlite:///:memory:"

    @pytest.mark.asyncio
    async def test_initialize_creates_tables(self, test_database):
        assert await test_database.get_contracts() == []
        assert await test_database.get_wallets() == []


# =============================================================================
# Contract Tests
# =============================================================================

class TestContractOperations:
    """Test contract record persistence."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, test_database, loan_record):
        contract_id = await test_database.save_contract(loan_record)

        stored = await test_database.get_contract(contract_id)

        assert stored["contract_type"] == "LOAN"
        assert stored["alias"] == "Diamond Loan #1"
        assert stored["contract_data"]["principal"] == 500_000_000

    @pytest.mark.asyncio
    async def test_explicit_id_kept(self, test_database, loan_record):
        loan_record["id"] = "fixed-id"
        assert await test_database.save_contract(loan_record) == "fixed-id"

    @pytest.mark.asyncio
    async def test_update_merges_json_and_overwrites_scalars(self, test_database, loan_record):
        contract_id = await test_database.save_contract(loan_record)

        await test_database.update_contract(contract_id, {
            "status": "running",
            "contract_datum": {"is_active": True, "payment_count": 1},
            "borrower": "bor-alice",
        })

        stored = await test_database.get_contract(contract_id)
        assert stored["status"] == "running"
        assert stored["contract_datum"] == {
            "balance": 516_360_000,
            "is_active": True,
            "payment_count": 1,
            "borrower": "bor-alice",
        }
        assert stored["updated_at"] is not None

    @pytest.mark.asyncio
    async def test_update_unknown_contract(self, test_database):
        with pytest.raises(KeyError):
            await test_database.update_contract("missing", {"status": "running"})

    @pytest.mark.asyncio
    async def test_get_missing_contract(self, test_database):
        assert await test_database.get_contract("missing") is None

    @pytest.mark.asyncio
    async def test_filter_by_run_and_type(self, test_database, loan_record):
        await test_database.save_contract(loan_record)
        await test_database.save_contract({**loan_record, "run_id": "run-2"})
        await test_database.save_contract({
            "run_id": "run-1",
            "contract_type": "CLO",
            "alias": "Test CLO",
            "status": "deployed",
        })

        assert len(await test_database.get_contracts(run_id="run-1")) == 2
        clos = await test_database.get_contracts(run_id="run-1", contract_type="CLO")
        assert [c["alias"] for c in clos] == ["Test CLO"]


# =============================================================================
# Wallet Tests
# =============================================================================

class TestWalletOperations:
    """Test the stored wallet set."""

    @pytest.mark.asyncio
    async def test_save_replaces_previous_set(self, test_database):
        first = [WalletHandle(identity_id="bor-alice", name="Alice", role=Role.BORROWER,
                              address="addr_a", required_balance=1_000_000)]
        second = [
            WalletHandle(identity_id="orig-x", name="X", role=Role.ORIGINATOR, address="addr_x"),
            WalletHandle(identity_id="analyst", name="Analyst", role=Role.ANALYST, address="addr_y"),
        ]

        await test_database.save_wallets(first)
        await test_database.save_wallets(second)

        stored = await test_database.get_wallets()
        assert [w.identity_id for w in stored] == ["orig-x", "analyst"]
        assert stored[0].role == Role.ORIGINATOR

    @pytest.mark.asyncio
    async def test_delete_all(self, test_database):
        await test_database.save_wallets([
            WalletHandle(identity_id="a", name="A", role=Role.BORROWER, address="addr_a"),
        ])

        assert await test_database.delete_all_wallets() == 1
        assert await test_database.get_wallets() == []


# =============================================================================
# Checkpoint Tests
# =============================================================================

class TestCheckpointOperations:
    """Test run checkpoints."""

    @pytest.mark.asyncio
    async def test_latest_checkpoint_per_run(self, test_database):
        await test_database.save_checkpoint("run-1", 1, "running", {"phase": 1})
        await test_database.save_checkpoint("run-2", 1, "running", {"phase": 1})
        latest_id = await test_database.save_checkpoint("run-1", 3, "paused", {"phase": 3})

        latest = await test_database.get_latest_checkpoint("run-1")

        assert latest["id"] == latest_id
        assert latest["run_state"] == "paused"
        assert latest["snapshot"] == {"phase": 3}

    @pytest.mark.asyncio
    async def test_no_checkpoint(self, test_database):
        assert await test_database.get_latest_checkpoint("run-x") is None
