"""Phase 1: create and fund participant wallets."""
from typing import List

import structlog

from clo_pipeline.core.context import RunContext
from clo_pipeline.core.exceptions import MissingIdentityError
from clo_pipeline.core.models import (
    ActionResult,
    Identity,
    RunConfig,
    SetupStep,
    Wallet,
    WalletHandle,
)
from clo_pipeline.finance.fees import format_ada, to_lovelace
from clo_pipeline.phases.base import BasePhase

logger = structlog.get_logger(__name__)


class SetupPhase(BasePhase):
    """
    Wallet creation and funding.

    Creation is idempotent: when the gateway already knows exactly the
    configured wallets they are reused. Funding is guaranteed in emulator
    mode; on a public network it happens externally and this phase only
    verifies every wallet holds its required balance.
    """

    phase_id = 1
    name = "Setup"
    step_types = (SetupStep,)

    def build_steps(self, config: RunConfig) -> List[SetupStep]:
        return [
            SetupStep(id="1.1", name="Create Wallets", operation="create_wallets"),
            SetupStep(id="1.2", name="Fund Wallets", operation="fund_wallets"),
        ]

    async def execute(self, step: SetupStep, ctx: RunContext) -> ActionResult:
        if step.operation == "create_wallets":
            return await self.create_wallets(ctx)
        return await self.fund_wallets(ctx)

    def wallet_specs(self, config: RunConfig) -> List[WalletHandle]:
        specs = []
        for wallet in config.wallets:
            funding = wallet.initial_funding
            if funding is None:
                funding = self.settings.funding.for_role(wallet.role.value)
            specs.append(WalletHandle(
                identity_id=wallet.wallet_id,
                name=wallet.name,
                role=wallet.role,
                required_balance=to_lovelace(funding),
            ))
        return specs

    async def create_wallets(self, ctx: RunContext) -> ActionResult:
        specs = self.wallet_specs(ctx.config)
        existing = await ctx.gateway.list_wallets()

        reused = self._matches(existing, specs)
        if reused:
            addresses = {h.identity_id: h.address for h in existing}
            handles = [s.model_copy(update={"address": addresses[s.identity_id]}) for s in specs]
            await ctx.log(f"  Reusing {len(handles)} existing wallets")
        else:
            await ctx.log(f"  Creating {len(specs)} wallets...")
            handles = await ctx.gateway.create_wallets(specs)

        identities = [
            Identity(
                id=h.identity_id,
                name=h.name,
                role=h.role,
                address=h.address,
                required_balance=h.required_balance,
                wallets=[Wallet(id=f"{h.identity_id}-wallet", address=h.address)],
            )
            for h in handles
        ]
        ctx.registry.set_identities(identities)

        for identity in identities:
            await ctx.log(f"  ✓ {identity.name} ({identity.role.value}): {identity.address[:24]}...")

        logger.info("setup.wallets_ready", run_id=ctx.run_id, count=len(identities), reused=reused)
        verb = "Reused" if reused else "Created"
        return ActionResult.ok(
            f"{verb} {len(identities)} wallets",
            data={"count": len(identities), "reused": reused},
        )

    async def fund_wallets(self, ctx: RunContext) -> ActionResult:
        identities = ctx.registry.identities
        if not identities:
            raise MissingIdentityError("No wallets to fund; create wallets first")

        handles = [
            WalletHandle(
                identity_id=i.id,
                name=i.name,
                role=i.role,
                address=i.address,
                required_balance=i.required_balance,
            )
            for i in identities
        ]
        await ctx.gateway.fund_wallets(handles)

        shortfalls = {}
        for identity in identities:
            balance = await ctx.gateway.query_balance(identity.address)
            identity.wallet.balance = balance
            required = identity.required_balance
            if balance < required:
                shortfalls[identity.id] = required - balance
                await ctx.log(
                    f"  ✗ {identity.name}: {format_ada(balance)} / {format_ada(required)} ADA "
                    f"(need {format_ada(required - balance)} more)",
                    "error",
                )
            else:
                await ctx.log(f"  ✓ {identity.name}: {format_ada(balance)} ADA")

        if shortfalls:
            total = sum(shortfalls.values())
            logger.warning("setup.funding_shortfall", run_id=ctx.run_id,
                           wallets=len(shortfalls), total_shortfall=total)
            return ActionResult.fail(
                f"{len(shortfalls)} wallet(s) underfunded, {format_ada(total)} ADA missing",
                data={"shortfalls": shortfalls, "total_shortfall": total},
                error="InsufficientBalanceError",
            )

        return ActionResult.ok(
            f"Funded {len(identities)} wallets",
            data={"total_funded": sum(i.balance for i in identities)},
        )

    @staticmethod
    def _matches(existing: List[WalletHandle], specs: List[WalletHandle]) -> bool:
        if not existing or len(existing) != len(specs):
            return False
        known = {(h.identity_id, h.name) for h in existing}
        return all((s.identity_id, s.name) in known for s in specs)
