from __future__ import annotations

import asyncio
import contextlib
import sys
from typing import AsyncIterator, List, Optional

import typer

from fee_distributor.config import Settings, get_settings
from fee_distributor.infrastructure.jupiter import JupiterClient
from fee_distributor.infrastructure.signing import FEE_COLLECTOR, OPERATOR, KeypairSigner
from fee_distributor.infrastructure.solana_rpc import SolanaRpcClient
from fee_distributor.orchestrator import DistributionPipeline, load_latest
from fee_distributor.reporter import print_cycle, print_status
from fee_distributor.supervisor import Supervisor
from fee_distributor.utils.logging import configure_logging

app = typer.Typer(help="Fee-to-reward distributor CLI.")


def _require(settings: Settings) -> None:
    missing = [
        name
        for name, value in (
            ("WALLET_PRIVATE_KEY", settings.wallet_private_key),
            ("TOKEN_MINT", settings.token_mint),
            ("FEE_COLLECTOR_ADDRESS", settings.fee_collector_address),
        )
        if not value
    ]
    if missing:
        typer.echo(f"Missing required settings: {', '.join(missing)}", err=True)
        raise typer.Exit(code=2)


@contextlib.asynccontextmanager
async def _pipeline(settings: Settings, persist: bool = True) -> AsyncIterator[DistributionPipeline]:
    signer = KeypairSigner.from_secrets(
        settings.wallet_private_key, settings.fee_collector_private_key
    )
    if not signer.can_sign(settings.fee_collector_address):
        typer.echo(
            "FEE_COLLECTOR_PRIVATE_KEY does not match FEE_COLLECTOR_ADDRESS; "
            "fee harvesting will fail.",
            err=True,
        )
    policy = settings.retry_policy()
    ledger = SolanaRpcClient(
        settings.rpc_endpoints,
        signer,
        token_program=settings.token_program_id,
        request_timeout=policy.timeout,
    )
    router = JupiterClient(settings.jupiter_api_url, request_timeout=policy.timeout)
    async with ledger, router:
        yield DistributionPipeline(
            ledger,
            ledger,
            router,
            signer.address_of(OPERATOR),
            cycle=settings.cycle_config().model_copy(update={"persist": persist}),
            policy=policy,
            band=settings.balance_band(),
            swap=settings.swap_config(),
            disbursement=settings.disbursement_config(),
        )


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    operator = "-"
    fee_collector_signer = "no"
    if settings.wallet_private_key:
        signer = KeypairSigner.from_secrets(
            settings.wallet_private_key, settings.fee_collector_private_key
        )
        operator = signer.address_of(OPERATOR)
        if settings.fee_collector_private_key:
            fee_collector_signer = signer.address_of(FEE_COLLECTOR)
    typer.echo(
        f"env={settings.app_env} | rpc={', '.join(settings.rpc_endpoints)} | "
        f"token={settings.token_mint or '-'} | fee_collector={settings.fee_collector_address or '-'} "
        f"(signer: {fee_collector_signer}) | operator={operator}"
    )
    typer.echo(
        f"reward={settings.reward_mint} via {settings.intermediate_mint} | "
        f"slippage={settings.slippage_bps}bps share={settings.reward_share_bps}bps "
        f"batch={settings.batch_size} | interval={settings.distribution_interval_minutes}min "
        f"retry={settings.cycle_max_retries}x{settings.retry_delay_minutes}min | "
        f"excluded={len(settings.excluded)}"
    )


@app.command()
def run(
    exclude: Optional[List[str]] = typer.Option(
        None,
        "--exclude",
        "-x",
        help="Additional address to exclude from the holder snapshot (repeatable).",
    ),
    no_persist: bool = typer.Option(False, "--no-persist", help="Do not write results to disk."),
) -> None:
    """
    Run one distribution cycle now (suitable for an external cron).
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    _require(settings)

    async def _run_once():
        async with _pipeline(settings, persist=not no_persist) as pipeline:
            return await pipeline.run_distribution_cycle(
                settings.token_mint,
                settings.fee_collector_address,
                [*settings.excluded, *(exclude or [])],
            )

    cycle = asyncio.run(_run_once())
    print_cycle(cycle)
    if not cycle.succeeded:
        raise typer.Exit(code=1)


@app.command()
def start() -> None:
    """
    Run the supervisor: periodic cycles, balance checks and failure retries.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    _require(settings)

    async def _serve() -> None:
        async with _pipeline(settings) as pipeline:
            supervisor = Supervisor(
                lambda: pipeline.run_distribution_cycle(
                    settings.token_mint, settings.fee_collector_address, settings.excluded
                ),
                settings.supervisor_config(),
                balance_check=lambda: pipeline.check_balance(settings.fee_collector_address),
            )
            try:
                await supervisor.run_forever()
            finally:
                print_status(supervisor.get_status())

    asyncio.run(_serve())


@app.command()
def last() -> None:
    """
    Show the most recently persisted cycle.
    """
    settings = get_settings()
    cycle = load_latest(settings.results_dir)
    print_cycle(cycle)
    if cycle is None:
        raise typer.Exit(code=1)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
