"""
walletbridge Wallet CLI - Generate keys, run a wallet service and inspect it.
"""

from __future__ import annotations

import asyncio
import signal
import sys

import httpx
import typer
from loguru import logger

from wbcore.crypto import generate_private_key_hex, public_key_suffix
from wbcore.errors import WalletBridgeError
from wbcore.models import GetPublicKeyArgs, ListActionsArgs, ListOutputsArgs, Network
from wbwallet.backends.http_client import HTTPWalletClient
from wbwallet.backends.memory import LocalWallet
from wbwallet.config import Settings
from wbwallet.server import WalletServer
from wbwallet.wallet.keys import KeyDeriver

app = typer.Typer(
    name="wb-wallet",
    help="walletbridge Wallet Management",
    add_completion=False,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


@app.command()
def keygen() -> None:
    """Generate a new wallet private key."""
    setup_logging()

    private_key = generate_private_key_hex()
    identity_key = KeyDeriver.from_hex(private_key).identity_key_hex

    typer.echo("\n" + "=" * 80)
    typer.echo("GENERATED PRIVATE KEY - KEEP IT SAFE!")
    typer.echo("=" * 80)
    typer.echo(f"\nPrivate key:  {private_key}")
    typer.echo(f"Identity key: {identity_key} (...{public_key_suffix(identity_key)})\n")
    typer.echo("=" * 80)
    typer.echo("Anyone with this key can spend the wallet's funds.")
    typer.echo("=" * 80 + "\n")


@app.command()
def serve(
    private_key: str = typer.Option(
        "", "--private-key", envvar="WALLET_PRIVATE_KEY", help="64 hex char private key"
    ),
    network: str = typer.Option("test", "--network", "-n", envvar="WALLET_NETWORK"),
    host: str = typer.Option("127.0.0.1", "--host", envvar="WALLET_HTTP_HOST"),
    port: int = typer.Option(3321, "--port", "-p", envvar="WALLET_HTTP_PORT"),
    initial_funding: int = typer.Option(
        0, "--fund", envvar="WALLET_INITIAL_FUNDING", help="Credit this many sats on startup"
    ),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Run an in-memory wallet behind the JSON-RPC wallet interface."""
    setup_logging(log_level)

    try:
        settings = Settings(
            network=network,
            private_key=private_key,
            http_host=host,
            http_port=port,
            initial_funding=initial_funding,
            log_level=log_level,
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1) from e

    try:
        asyncio.run(_run_server(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


async def _run_server(settings: Settings) -> None:
    private_key = settings.private_key
    if not private_key:
        private_key = generate_private_key_hex()
        logger.warning("No private key configured, generated an ephemeral one")

    wallet = LocalWallet(
        private_key, network=Network.parse(settings.network), fee_rate=settings.fee_rate
    )
    if settings.initial_funding > 0:
        wallet.fund(settings.initial_funding)

    server = WalletServer(settings, wallet)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info(f"Identity key: {wallet.identity_key}")
    try:
        await server.start()
        await stop_event.wait()
    finally:
        await server.stop()


@app.command()
def info(
    wallet_url: str = typer.Option("http://127.0.0.1:3321", "--wallet-url", envvar="WALLET_URL"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Display identity, network and height of a running wallet."""
    setup_logging(log_level)
    _run_client(_show_info(wallet_url))


async def _show_info(wallet_url: str) -> None:
    wallet = HTTPWalletClient(wallet_url)
    try:
        identity = await wallet.get_public_key(GetPublicKeyArgs(identity_key=True))
        network = await wallet.get_network()
        height = await wallet.get_height()

        print(f"\nWallet:       {wallet_url}")
        print(f"Identity key: {identity.public_key}")
        print(f"Network:      {network.value}")
        print(f"Height:       {height}\n")
    finally:
        await wallet.close()


@app.command()
def outputs(
    wallet_url: str = typer.Option("http://127.0.0.1:3321", "--wallet-url", envvar="WALLET_URL"),
    basket: str = typer.Option("default", "--basket", "-b"),
    limit: int = typer.Option(25, "--limit"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """List spendable outputs in a basket."""
    setup_logging(log_level)
    _run_client(_list_outputs(wallet_url, basket, limit))


async def _list_outputs(wallet_url: str, basket: str, limit: int) -> None:
    wallet = HTTPWalletClient(wallet_url)
    try:
        result = await wallet.list_outputs(
            ListOutputsArgs(basket=basket, limit=limit, include_custom_instructions=True)
        )
        if not result.outputs:
            print(f"\nNo spendable outputs in basket '{basket}'.")
            return

        total = sum(o.satoshis for o in result.outputs)
        print(f"\n{result.total_outputs} output(s) in '{basket}', {total:,} sats shown:\n")
        print("=" * 100)
        for output in result.outputs:
            print(f"  {output.outpoint}  {output.satoshis:>14,} sats")
            if output.custom_instructions:
                print(f"    {output.custom_instructions}")
        print("=" * 100)
    finally:
        await wallet.close()


@app.command()
def actions(
    wallet_url: str = typer.Option("http://127.0.0.1:3321", "--wallet-url", envvar="WALLET_URL"),
    label: list[str] = typer.Option([], "--label", help="Filter by label (repeatable)"),
    match_all: bool = typer.Option(False, "--all", help="Require every label to match"),
    limit: int = typer.Option(25, "--limit"),
    offset: int = typer.Option(0, "--offset"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """List wallet actions."""
    setup_logging(log_level)
    args = ListActionsArgs(
        labels=label,
        label_query_mode="all" if match_all else "any",
        include_labels=True,
        limit=limit,
        offset=offset,
    )
    _run_client(_list_actions(wallet_url, args))


async def _list_actions(wallet_url: str, args: ListActionsArgs) -> None:
    wallet = HTTPWalletClient(wallet_url)
    try:
        result = await wallet.list_actions(args)
        print(f"\n{result.total_actions} action(s):\n")
        print("=" * 100)
        for action in result.actions:
            ident = action.txid or action.reference
            labels = ", ".join(action.labels or [])
            print(f"  [{action.status.value:>8}] {ident}  {action.satoshis:+,} sats")
            print(f"             {action.description}" + (f"  ({labels})" if labels else ""))
        print("=" * 100)
    finally:
        await wallet.close()


def _run_client(coro) -> None:
    try:
        asyncio.run(coro)
    except WalletBridgeError as e:
        logger.error(f"{e.code}: {e}")
        raise typer.Exit(1) from e
    except httpx.HTTPError as e:
        logger.error(f"Wallet unreachable: {e}")
        raise typer.Exit(1) from e


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
