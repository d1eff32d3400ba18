"""
Run assembly.

Builds the ledger client, delivery engine, stores and swap venue from a
Config, prepares the token context, and drives the stage pipeline under
the crash-only supervisor.
"""

import logging
from typing import Optional, Union

from makerfleet.core.config import Config
from makerfleet.core.errors import LedgerTransportError
from makerfleet.delivery.engine import TransactionDeliveryEngine
from makerfleet.delivery.ledger import LedgerClient, SolanaLedgerClient
from makerfleet.delivery.retry import RetryPolicy, execute
from makerfleet.delivery.submit import delivery_policy
from makerfleet.delivery.timing import Clock
from makerfleet.notify.telegram import TelegramNotifier
from makerfleet.pipeline.orchestrator import PipelineRun, StagePipelineOrchestrator
from makerfleet.pipeline.supervisor import Supervisor
from makerfleet.stages import StageContext, build_stages
from makerfleet.swap.selection import select_provider
from makerfleet.swap.tokens import prepare_token_context
from makerfleet.wallets.processed import ProcessedWalletStore
from makerfleet.wallets.store import WalletStore, load_keypair

logger = logging.getLogger(__name__)


async def build_context(
    config: Config,
    ledger: Optional[LedgerClient] = None,
    clock: Optional[Clock] = None,
) -> StageContext:
    """
    Assemble the shared run context.

    Raises:
        WalletStoreError: Treasury key or wallet folders unusable
        UnknownTokenProgramError: Mint is not a token mint
        LedgerTransportError: Ledger unreachable after retries
    """
    clock = clock or Clock()
    ledger = ledger or SolanaLedgerClient(config.rpc_url, config.ws_url)
    engine = TransactionDeliveryEngine(ledger, clock=clock)
    policy = delivery_policy(config)

    treasury = load_keypair(config.source_keypair_path)
    logger.info(f"Treasury wallet: {treasury.pubkey()}")

    wallets = WalletStore(config.keypairs_dir)
    wallets.ensure_folders()

    startup = RetryPolicy(
        max_attempts=config.max_retries,
        delay=config.retry_delay,
        retry_on=(LedgerTransportError,),
    )
    token = (await execute(
        lambda: prepare_token_context(ledger, engine, treasury, config.token_mint, policy),
        startup,
        clock=clock,
        label="prepare token context",
    )).unwrap()

    processed = ProcessedWalletStore(config, config.token_mint)
    processed.clear()

    return StageContext(
        config=config,
        ledger=ledger,
        engine=engine,
        wallets=wallets,
        processed=processed,
        treasury=treasury,
        token=token,
        provider=select_provider(token.program, ledger, config),
        policy=policy,
        clock=clock,
        notifier=TelegramNotifier(config),
    )


def build_orchestrator(ctx: StageContext) -> StagePipelineOrchestrator:
    config = ctx.config

    def pass_complete(run: PipelineRun) -> None:
        if ctx.notifier:
            ctx.notifier.notify_pass_complete(run.passes)

    return StagePipelineOrchestrator(
        build_stages(),
        context=ctx,
        clock=ctx.clock,
        inter_stage_delay=config.delay_between_stages,
        failure_cooldown=config.stage_retry_delay,
        loop_delay=config.delay_between_loops,
        loop_flag=config.read_loop_enabled,
        on_pass_complete=pass_complete,
    )


async def run_pipeline(
    config: Config,
    start: Union[int, str] = "generate",
    ledger: Optional[LedgerClient] = None,
    clock: Optional[Clock] = None,
) -> PipelineRun:
    """
    Run the pipeline from `start` until it halts.

    In loop mode this only returns once LOOP_ENABLED is switched off.
    """
    ctx = await build_context(config, ledger=ledger, clock=clock)

    def restarted(error: BaseException, resume: int) -> None:
        if ctx.notifier:
            ctx.notifier.notify_restart(error, build_stages()[resume].name)

    supervisor = Supervisor(
        lambda: build_orchestrator(ctx),
        restart_delay=config.restart_delay,
        clock=ctx.clock,
        on_restart=restarted,
    )

    try:
        run = await supervisor.run(start)
        if ctx.notifier:
            ctx.notifier.notify_halt(run.passes)
        return run
    finally:
        await ctx.ledger.close()
