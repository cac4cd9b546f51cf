"""Phase 5: bundle active loans into a CLO and issue its tranche tokens."""
from typing import Dict, List, Optional

import structlog

from clo_pipeline.core.context import RunContext
from clo_pipeline.core.defaults import DEFAULT_TRANCHE_INVESTORS
from clo_pipeline.core.exceptions import LoanStateError, MissingIdentityError
from clo_pipeline.core.models import (
    ActionResult,
    Asset,
    CLOContract,
    CLOStatus,
    CLOStep,
    Identity,
    Role,
    RunConfig,
    Tranche,
)
from clo_pipeline.finance.fees import format_ada
from clo_pipeline.finance.waterfall import priority_order, tranche_principals, validate_allocations
from clo_pipeline.phases.base import BasePhase

logger = structlog.get_logger(__name__)


class CLOBundlingPhase(BasePhase):
    """
    CLO bundling: bundle, deploy, distribute.

    The CLO is built from the loans that are active when the bundle step
    runs. Its value is the sum of their principals at deployment and is
    never recomputed afterwards.
    """

    phase_id = 5
    name = "CLO Bundling"
    step_types = (CLOStep,)

    def build_steps(self, config: RunConfig) -> List[CLOStep]:
        if config.clo is None:
            return []
        return [
            CLOStep(id="5.1", name="Bundle active loans", operation="bundle"),
            CLOStep(id="5.2", name=f"Deploy {config.clo.name}", operation="deploy"),
            CLOStep(id="5.3", name="Distribute tranche tokens", operation="distribute"),
        ]

    async def execute(self, step: CLOStep, ctx: RunContext) -> ActionResult:
        if step.operation == "bundle":
            return await self.bundle(ctx)
        if step.operation == "deploy":
            return await self.deploy(ctx)
        return await self.distribute(ctx)

    async def bundle(self, ctx: RunContext) -> ActionResult:
        active = ctx.registry.active_loans()
        if not active:
            raise LoanStateError("No active loans to bundle into a CLO")

        manager = ctx.index.first_with_role(Role.ANALYST)
        if manager is None:
            raise MissingIdentityError("No Analyst identity to manage the CLO")

        nft_name = self.settings.clo.manager_nft_name
        receipt = await ctx.gateway.mint_asset(manager.address, nft_name, 1)
        manager.wallet.add_asset(Asset(policy_id=receipt.policy_id, asset_name=nft_name, quantity=1))

        ctx.clo_bundle = [loan.id for loan in active]
        ctx.stats["clo_manager"] = manager.id
        ctx.stats["clo_manager_policy_id"] = receipt.policy_id

        for loan in active:
            await ctx.log(f"  • {loan.alias}: {format_ada(loan.principal)} ADA at {loan.apr / 100:.2f}%")
        await ctx.log(f"  ✓ Bundled {len(active)} active loans, manager NFT minted to {manager.name}",
                      "success")
        logger.info("clo.bundled", run_id=ctx.run_id, loans=ctx.clo_bundle, manager=manager.id)
        return ActionResult.ok(
            f"Bundled {len(active)} active loans",
            data={"loan_ids": list(ctx.clo_bundle), "manager": manager.id, "policy_id": receipt.policy_id},
        )

    async def deploy(self, ctx: RunContext) -> ActionResult:
        if not ctx.clo_bundle:
            raise LoanStateError("No bundled loans; run the bundle step first")
        if ctx.registry.clo_contracts:
            raise LoanStateError(f"CLO {ctx.registry.clo_contracts[0].name} is already deployed")

        clo_config = ctx.config.clo
        tranches = [
            Tranche(
                name=t.name,
                allocation=t.allocation,
                yield_modifier=t.yield_modifier,
                investor_id=t.investor_id,
            )
            for t in clo_config.tranches
        ]
        validate_allocations(tranches)

        loans = [loan for loan in ctx.registry.loan_contracts if loan.id in ctx.clo_bundle]
        total_value = sum(loan.principal for loan in loans)
        per_token = self.settings.clo.lovelace_per_token
        principals = tranche_principals(total_value, tranches)
        for tranche in tranches:
            tranche.token_quantity = principals[tranche.name] // per_token

        clo = CLOContract(
            id=f"CLO-{len(ctx.registry.clo_contracts) + 1:03d}",
            name=clo_config.name,
            manager=ctx.stats["clo_manager"],
            manager_policy_id=ctx.stats.get("clo_manager_policy_id"),
            tranches=tranches,
            total_value=total_value,
            collateral_count=len(loans),
            collateral_ids=[loan.id for loan in loans],
            created_at=ctx.now,
        )
        ctx.registry.clo_contracts.append(clo)

        warnings: List[str] = []
        await self.persist_clo(ctx, clo, warnings)

        await ctx.log(f"  ✓ Deployed {clo.name}: {format_ada(total_value)} ADA over {len(loans)} loans",
                      "success")
        for tranche in priority_order(tranches):
            await ctx.log(
                f"    {tranche.name}: {tranche.allocation}% = {format_ada(principals[tranche.name])} ADA, "
                f"{tranche.token_quantity} tokens, {tranche.yield_modifier / 100:.2f}x yield"
            )
        logger.info("clo.deployed", run_id=ctx.run_id, clo_id=clo.id, total_value=total_value,
                    collateral_count=clo.collateral_count)
        return ActionResult.ok(
            f"Deployed {clo.name}",
            data={
                "clo_id": clo.id,
                "remote_id": clo.remote_id,
                "total_value": total_value,
                "collateral_count": clo.collateral_count,
                "tranches": {t.name: t.token_quantity for t in tranches},
            },
            warnings=warnings,
        )

    async def distribute(self, ctx: RunContext) -> ActionResult:
        if not ctx.registry.clo_contracts:
            raise LoanStateError("No CLO deployed; run the deploy step first")
        clo = ctx.registry.clo_contracts[-1]

        suffix = self.settings.clo.tranche_token_suffix
        issued: Dict[str, int] = {}
        warnings: List[str] = []

        for tranche in priority_order(clo.tranches):
            if tranche.distributed:
                continue
            investor = self._investor_for(ctx, tranche, clo)
            if investor is None:
                warnings.append(f"No investor for tranche {tranche.name}")
                await ctx.log(f"  ⚠ No investor for tranche {tranche.name}, tokens not issued", "warning")
                continue
            if tranche.token_quantity == 0:
                warnings.append(f"Tranche {tranche.name} has no tokens to issue")
                await ctx.log(f"  ⚠ Tranche {tranche.name} is too small to issue tokens", "warning")
                continue

            token_name = f"{tranche.name}{suffix}"
            receipt = await ctx.gateway.mint_asset(investor.address, token_name, tranche.token_quantity)
            investor.wallet.add_asset(Asset(
                policy_id=receipt.policy_id,
                asset_name=token_name,
                quantity=tranche.token_quantity,
            ))
            tranche.investor_id = investor.id
            tranche.token_policy_id = receipt.policy_id
            tranche.distributed = True
            issued[tranche.name] = tranche.token_quantity

            await ctx.log(f"  ✓ {tranche.token_quantity} {token_name} tokens to {investor.name}", "success")

        if issued:
            clo.status = CLOStatus.DISTRIBUTED
            await self.sync_contract(
                ctx,
                clo.remote_id,
                {"status": clo.status.value, "contract_data": clo.model_dump(mode="json")},
                warnings,
            )

        logger.info("clo.distributed", run_id=ctx.run_id, clo_id=clo.id, issued=issued)
        return ActionResult.ok(
            f"Distributed {len(issued)} of {len(clo.tranches)} tranches",
            data={"issued": issued},
            warnings=warnings,
        )

    @staticmethod
    def _investor_for(ctx: RunContext, tranche: Tranche, clo: CLOContract) -> Optional[Identity]:
        """Pinned investor, then the default mapping, then any investor, then the manager."""
        for ref in (tranche.investor_id, DEFAULT_TRANCHE_INVESTORS.get(tranche.name)):
            identity = ctx.index.get(ref)
            if identity is not None:
                return identity
        return ctx.index.first_with_role(Role.INVESTOR) or ctx.index.get(clo.manager)
