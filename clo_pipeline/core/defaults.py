"""Default run configuration.

Five originators with tokenizable assets, six borrowers, one analyst and
four investors; six loans (three reserved, three open market) and one
three-tranche CLO.
"""
from decimal import Decimal

from clo_pipeline.core.models import (
    AssetConfig,
    CLOConfig,
    LoanConfig,
    Role,
    RunConfig,
    TrancheConfig,
    WalletConfig,
)

DEFAULT_WALLETS = [
    # Originators
    WalletConfig(id="orig-jewelry", name="MachDiamond Jewelry", role=Role.ORIGINATOR,
                 initial_funding=Decimal("5000"), assets=[AssetConfig(name="Diamond", quantity=2)]),
    WalletConfig(id="orig-airplane", name="Airplane Manufacturing LLC", role=Role.ORIGINATOR,
                 initial_funding=Decimal("10000"), assets=[AssetConfig(name="Airplane", quantity=10)]),
    WalletConfig(id="orig-home", name="Bob Smith", role=Role.ORIGINATOR,
                 initial_funding=Decimal("3000"), assets=[AssetConfig(name="Home", quantity=1)]),
    WalletConfig(id="orig-realestate", name="Premier Asset Holdings", role=Role.ORIGINATOR,
                 initial_funding=Decimal("5000"), assets=[AssetConfig(name="RealEstate", quantity=10)]),
    WalletConfig(id="orig-yacht", name="Yacht Makers Corp", role=Role.ORIGINATOR,
                 initial_funding=Decimal("5000"), assets=[AssetConfig(name="Boat", quantity=3)]),

    # Borrowers
    WalletConfig(id="bor-cardanoair", name="Cardano Airlines LLC", role=Role.BORROWER,
                 initial_funding=Decimal("3000")),
    WalletConfig(id="bor-superfastcargo", name="Superfast Cargo Air", role=Role.BORROWER,
                 initial_funding=Decimal("3000")),
    WalletConfig(id="bor-alice", name="Alice Doe", role=Role.BORROWER,
                 initial_funding=Decimal("1000")),
    WalletConfig(id="bor-officeop", name="Office Operator LLC", role=Role.BORROWER,
                 initial_funding=Decimal("1500")),
    WalletConfig(id="bor-luxuryapt", name="Luxury Apartments LLC", role=Role.BORROWER,
                 initial_funding=Decimal("1500")),
    WalletConfig(id="bor-boatop", name="Boat Operator LLC", role=Role.BORROWER,
                 initial_funding=Decimal("2000")),

    # Analyst
    WalletConfig(id="analyst", name="Cardano Investment Bank", role=Role.ANALYST,
                 initial_funding=Decimal("1000")),

    # Investors
    WalletConfig(id="inv-1", name="Senior Tranche Investor", role=Role.INVESTOR,
                 initial_funding=Decimal("50000")),
    WalletConfig(id="inv-2", name="Mezzanine Tranche Investor", role=Role.INVESTOR,
                 initial_funding=Decimal("30000")),
    WalletConfig(id="inv-3", name="Junior Tranche Investor", role=Role.INVESTOR,
                 initial_funding=Decimal("20000")),
    WalletConfig(id="inv-4", name="Hedge Fund Alpha", role=Role.INVESTOR,
                 initial_funding=Decimal("100000")),
]

DEFAULT_LOANS = [
    # Reserved buyer loans
    LoanConfig(borrower_id="bor-alice", originator_id="orig-jewelry", asset="Diamond", quantity=2,
               principal=Decimal("500"), apr=Decimal("6"), term_months=12, reserved_buyer=True),
    LoanConfig(borrower_id="bor-cardanoair", originator_id="orig-airplane", asset="Airplane", quantity=5,
               principal=Decimal("2000"), apr=Decimal("4"), term_months=60, reserved_buyer=True),
    LoanConfig(borrower_id="bor-officeop", originator_id="orig-realestate", asset="RealEstate", quantity=5,
               principal=Decimal("500"), apr=Decimal("5"), term_months=24, reserved_buyer=True),

    # Open market loans
    LoanConfig(originator_id="orig-airplane", asset="Airplane", quantity=5,
               principal=Decimal("2000"), apr=Decimal("4.5"), term_months=60),
    LoanConfig(originator_id="orig-realestate", asset="RealEstate", quantity=5,
               principal=Decimal("500"), apr=Decimal("5.5"), term_months=24),
    LoanConfig(originator_id="orig-yacht", asset="Boat", quantity=3,
               principal=Decimal("800"), apr=Decimal("7"), term_months=36),
]

DEFAULT_CLO = CLOConfig(
    name="MintMatrix CLO Series 1",
    tranches=[
        TrancheConfig(name="Senior", allocation=Decimal("60"), yield_modifier=80),
        TrancheConfig(name="Mezzanine", allocation=Decimal("25"), yield_modifier=100),
        TrancheConfig(name="Junior", allocation=Decimal("15"), yield_modifier=150),
    ],
)

# Tranche -> investor when a tranche does not name one
DEFAULT_TRANCHE_INVESTORS = {
    "Senior": "inv-1",
    "Mezzanine": "inv-2",
    "Junior": "inv-3",
}


def default_run_config(network: str = "emulator") -> RunConfig:
    """A fresh copy of the default scenario."""
    return RunConfig(
        network=network,
        wallets=[w.model_copy(deep=True) for w in DEFAULT_WALLETS],
        loans=[l.model_copy(deep=True) for l in DEFAULT_LOANS],
        clo=DEFAULT_CLO.model_copy(deep=True),
    )
