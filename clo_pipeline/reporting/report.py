"""
Run Report Generator.

Summarises a pipeline run:
- Phase and step outcomes
- Participant balances and holdings
- Loan terms and lifecycle state
- CLO tranches with the projected yield waterfall and redemption value
- Loss stress test of the CLO structure
- Per-loan amortization schedules
"""

from dataclasses import asdict
from typing import List, Optional

import pandas as pd

from clo_pipeline.core.models import CLOContract, LoanContract, StepStatus
from clo_pipeline.finance.amortization import (
    amortization_schedule,
    format_duration,
    payment_unit_label,
    term_in_years,
)
from clo_pipeline.finance.fees import format_ada, to_ada
from clo_pipeline.finance.waterfall import (
    LossAllocation,
    YieldDistribution,
    allocate_losses,
    coverage_ratio,
    distribute_yield,
    effective_rate,
    priority_order,
    redemption_value,
    tranche_principals,
    weighted_average_yield,
)

STATUS_ICONS = {
    StepStatus.PASSED: "✓",
    StepStatus.FAILED: "✗",
    StepStatus.SKIPPED: "○",
    StepStatus.DISABLED: "○",
    StepStatus.RUNNING: "…",
    StepStatus.PENDING: " ",
}


def schedule_frame(loan: LoanContract) -> pd.DataFrame:
    """Amortization schedule of a loan as a DataFrame indexed by period."""
    rows = amortization_schedule(loan.principal_ada, loan.apr, loan.frequency, loan.installments)
    frame = pd.DataFrame([asdict(row) for row in rows])
    return frame.set_index("period")


class RunReport:
    """Generate reports for a finished (or paused) pipeline run."""

    def __init__(self, engine):
        self.engine = engine
        self.registry = engine.registry

    # =========================================================================
    # Tables
    # =========================================================================

    def phases_frame(self) -> pd.DataFrame:
        rows = []
        for phase in self.engine.phases:
            counts = {status: 0 for status in StepStatus}
            for step in phase.steps:
                counts[step.status] += 1
            rows.append({
                "phase": phase.id,
                "name": phase.name,
                "status": phase.status.value,
                "steps": len(phase.steps),
                "passed": counts[StepStatus.PASSED],
                "failed": counts[StepStatus.FAILED],
                "skipped": counts[StepStatus.SKIPPED],
            })
        return pd.DataFrame(rows)

    def identities_frame(self) -> pd.DataFrame:
        rows = []
        for identity in self.registry.identities:
            holdings = ", ".join(
                f"{a.quantity} {a.asset_name}" for w in identity.wallets for a in w.assets
            )
            rows.append({
                "id": identity.id,
                "name": identity.name,
                "role": identity.role.value,
                "balance_ada": float(to_ada(identity.balance)),
                "assets": holdings,
            })
        return pd.DataFrame(rows)

    def loans_frame(self) -> pd.DataFrame:
        rows = []
        for loan in self.registry.loan_contracts:
            rows.append({
                "id": loan.id,
                "alias": loan.alias,
                "type": loan.subtype,
                "borrower": self.registry.index.name_of(loan.borrower) if loan.borrower else "",
                "principal_ada": float(loan.principal_ada),
                "apr_pct": loan.apr / 100,
                "payment_ada": float(to_ada(loan.payment_amount)),
                "term": f"{loan.installments} {payment_unit_label(loan.frequency)}",
                "years": float(term_in_years(loan.frequency, loan.installments)),
                "payments": f"{loan.state.payment_count}/{loan.installments}",
                "remaining": loan.remaining_installments,
                "balance_ada": float(to_ada(max(loan.state.balance, 0))),
                "status": loan.status.value,
            })
        return pd.DataFrame(rows)

    def tranche_frame(self, clo: CLOContract) -> pd.DataFrame:
        principals = tranche_principals(clo.total_value, clo.tranches)
        projection = self.projected_yield(clo)
        rows = []
        for tranche in priority_order(clo.tranches):
            payout = projection[tranche.name]
            rows.append({
                "tranche": tranche.name,
                "allocation_pct": float(tranche.allocation),
                "principal_ada": float(to_ada(principals[tranche.name])),
                "tokens": tranche.token_quantity,
                "investor": self.registry.index.name_of(tranche.investor_id) if tranche.investor_id else "",
                "projected_yield_ada": float(to_ada(payout)),
                "effective_rate_pct": effective_rate(payout, principals[tranche.name]) / 100,
                "coverage_x": coverage_ratio(clo.total_value, tranche.name, clo.tranches, clo.total_value) / 100,
                "redemption_ada": float(to_ada(self.redemption(clo, tranche))),
            })
        return pd.DataFrame(rows)

    # =========================================================================
    # Projections
    # =========================================================================

    def collateral(self, clo: CLOContract) -> List[LoanContract]:
        return [loan for loan in self.registry.loan_contracts if loan.id in clo.collateral_ids]

    def projected_yield(self, clo: CLOContract) -> YieldDistribution:
        """Scheduled interest of the collateral pool run through the waterfall."""
        interest = sum(max(loan.total_interest, 0) for loan in self.collateral(clo))
        return distribute_yield(interest, clo.tranches)

    def redemption(self, clo: CLOContract, tranche) -> int:
        """Net lovelace for redeeming every issued token of a tranche."""
        if tranche.token_quantity == 0:
            return 0
        fee_bp = self.engine.settings.clo.redemption_fee_basis_points
        value = redemption_value(tranche, tranche.token_quantity, tranche.token_quantity,
                                 clo.total_value, fee_bp)
        return value.net

    def stress_loss(self, clo: CLOContract) -> int:
        """Loss if the largest loan in the pool defaults with nothing repaid."""
        return max((loan.principal for loan in self.collateral(clo)), default=0)

    def loss_frame(self, clo: CLOContract, loss_amount: int) -> pd.DataFrame:
        allocation: LossAllocation = allocate_losses(loss_amount, clo.tranches, clo.total_value)
        rows = []
        for tranche in priority_order(clo.tranches):
            rows.append({
                "tranche": tranche.name,
                "absorbed_ada": float(to_ada(allocation.absorbed[tranche.name])),
                "remaining_ada": float(to_ada(allocation.remaining_principal[tranche.name])),
            })
        frame = pd.DataFrame(rows)
        frame.attrs["unabsorbed"] = allocation.unabsorbed
        return frame

    # =========================================================================
    # Output
    # =========================================================================

    def generate_markdown_report(self) -> str:
        """Generate markdown formatted report."""
        engine = self.engine
        lines = []

        lines.append("# CLO Pipeline Run Report")
        lines.append("")
        lines.append(f"**Run:** {engine.run_id}")
        lines.append(f"**Network:** {engine.config.network}")
        lines.append(f"**State:** {engine.state.value}")
        lines.append(f"**Simulated Time:** {format_duration(engine.ctx.now - engine.ctx.epoch)} elapsed")
        lines.append("")

        lines.append("## Phases")
        lines.append("")
        lines.append("| Phase | Name | Status | Steps |")
        lines.append("|-------|------|--------|-------|")
        for phase in engine.phases:
            lines.append(f"| {phase.id} | {phase.name} | {phase.status.value} | {len(phase.steps)} |")
        lines.append("")

        failed = [s for p in engine.phases for s in p.steps if s.status == StepStatus.FAILED]
        if failed:
            lines.append("### Failed Steps")
            lines.append("")
            for step in failed:
                lines.append(f"- `{step.id}` {step.name}: {step.message}")
            lines.append("")

        lines.append("## Loans")
        lines.append("")
        lines.append("| Loan | Type | Principal | APR | Payment | Paid | Status |")
        lines.append("|------|------|-----------|-----|---------|------|--------|")
        for loan in self.registry.loan_contracts:
            lines.append(
                f"| {loan.alias} | {loan.subtype} | {format_ada(loan.principal)} ADA | "
                f"{loan.apr / 100:.2f}% | {format_ada(loan.payment_amount)} ADA | "
                f"{loan.state.payment_count}/{loan.installments} | {loan.status.value} |"
            )
        lines.append("")

        for clo in self.registry.clo_contracts:
            pool = self.collateral(clo)
            wa_apr = weighted_average_yield([(l.principal, l.apr) for l in pool])
            lines.append(f"## {clo.name}")
            lines.append("")
            lines.append(f"**Total Value:** {format_ada(clo.total_value)} ADA")
            lines.append(f"**Collateral:** {clo.collateral_count} loans")
            lines.append(f"**Weighted Average APR:** {wa_apr / 100:.2f}%")
            lines.append(f"**Status:** {clo.status.value}")
            lines.append("")
            lines.append("| Tranche | Allocation | Principal | Tokens | Projected Yield | Redemption |")
            lines.append("|---------|------------|-----------|--------|-----------------|------------|")
            for row in self.tranche_frame(clo).itertuples(index=False):
                lines.append(
                    f"| {row.tranche} | {row.allocation_pct:.0f}% | {row.principal_ada:,.2f} ADA | "
                    f"{row.tokens} | {row.projected_yield_ada:,.2f} ADA | {row.redemption_ada:,.2f} ADA |"
                )
            lines.append("")

            loss = self.stress_loss(clo)
            stress = self.loss_frame(clo, loss)
            lines.append(f"### Stress: largest loan defaults ({format_ada(loss)} ADA)")
            lines.append("")
            lines.append("| Tranche | Absorbed | Remaining |")
            lines.append("|---------|----------|-----------|")
            for row in stress.itertuples(index=False):
                lines.append(f"| {row.tranche} | {row.absorbed_ada:,.2f} ADA | {row.remaining_ada:,.2f} ADA |")
            if stress.attrs["unabsorbed"]:
                lines.append("")
                lines.append(f"**Unabsorbed (liquidation):** {format_ada(stress.attrs['unabsorbed'])} ADA")
            lines.append("")

        return "\n".join(lines)

    def print_full_report(self, loan_schedules: bool = False):
        """Print complete run report to console."""
        engine = self.engine
        print("\n" + "=" * 80)
        print("CLO PIPELINE - RUN REPORT")
        print("=" * 80)
        print(f"\nRun:     {engine.run_id}")
        print(f"Network: {engine.config.network}")
        print(f"State:   {engine.state.value}")

        self._print_section("PHASES", self.phases_frame())
        for phase in engine.phases:
            for step in phase.steps:
                print(f"  {STATUS_ICONS[step.status]} {step.id:<6} {step.name}")

        self._print_section("PARTICIPANTS", self.identities_frame())
        self._print_section("LOANS", self.loans_frame())

        for clo in self.registry.clo_contracts:
            self._print_section(f"CLO: {clo.name}", self.tranche_frame(clo))
            print(f"\n  Total value: {format_ada(clo.total_value)} ADA over {clo.collateral_count} loans")
            loss = self.stress_loss(clo)
            self._print_section(f"STRESS: largest loan defaults ({format_ada(loss)} ADA)",
                                self.loss_frame(clo, loss))

        if loan_schedules:
            for loan in self.registry.loan_contracts:
                term = format_duration(loan.term_length * loan.installments)
                self._print_section(f"SCHEDULE: {loan.alias} ({term})", schedule_frame(loan))

    @staticmethod
    def _print_section(title: str, frame: Optional[pd.DataFrame]):
        print("\n" + "-" * 80)
        print(title)
        print("-" * 80)
        if frame is None or frame.empty:
            print("\n  (none)")
            return
        print()
        print(frame.to_string())
