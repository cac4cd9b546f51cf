"""Phase 2: mint each originator's real-world assets as native tokens."""
from typing import List

import structlog

from clo_pipeline.core.context import RunContext
from clo_pipeline.core.exceptions import StepSkipped
from clo_pipeline.core.models import ActionResult, Asset, MintStep, Role, RunConfig
from clo_pipeline.phases.base import BasePhase

logger = structlog.get_logger(__name__)


class TokenizationPhase(BasePhase):
    """One mint step per configured originator asset, in configuration order."""

    phase_id = 2
    name = "Tokenization"
    step_types = (MintStep,)

    def build_steps(self, config: RunConfig) -> List[MintStep]:
        steps = []
        for wallet in config.wallets:
            if wallet.role != Role.ORIGINATOR:
                continue
            for asset in wallet.assets:
                steps.append(MintStep(
                    id=f"2.{len(steps) + 1}",
                    name=f"{wallet.name}: Mint {asset.quantity} {asset.name}",
                    originator_id=wallet.wallet_id,
                    asset_name=asset.name,
                    quantity=asset.quantity,
                ))
        return steps

    async def execute(self, step: MintStep, ctx: RunContext) -> ActionResult:
        originator = ctx.index.get(step.originator_id)
        if originator is None or originator.role != Role.ORIGINATOR:
            raise StepSkipped(f"Originator {step.originator_id} not found, {step.asset_name} not minted")

        receipt = await ctx.gateway.mint_asset(originator.address, step.asset_name, step.quantity)
        originator.wallet.add_asset(Asset(
            policy_id=receipt.policy_id,
            asset_name=step.asset_name,
            quantity=step.quantity,
        ))

        await ctx.log(f"  ✓ {originator.name}: minted {step.quantity} {step.asset_name}", "success")
        logger.info("tokenization.minted", originator=originator.id, asset_name=step.asset_name,
                    quantity=step.quantity, policy_id=receipt.policy_id)
        return ActionResult.ok(
            f"Minted {step.quantity} {step.asset_name}",
            data={"policy_id": receipt.policy_id, "tx_hash": receipt.tx_hash, "quantity": step.quantity},
        )
