"""
Command-line interface for payment handoffs.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Annotated

import httpx
import typer
from loguru import logger
from pydantic import ValidationError

from handoff.config import DeriveSide, EndpointConfig, HandoffConfig
from handoff.endpoint import WalletEndpoint, endpoint_from_config
from handoff.orchestrator import PaymentHandoff, find_claimed_output
from handoff.transport import FileTransport
from wbcore.crypto import public_key_suffix
from wbcore.errors import WalletBridgeError

app = typer.Typer(
    name="wb-handoff",
    help="walletbridge Handoff - Move funds between two wallets",
    add_completion=False,
)


def setup_logging(level: str) -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


PayerUrl = Annotated[
    str,
    typer.Option("--payer-url", envvar="HANDOFF_PAYER_URL", help="Payer wallet service URL"),
]
PayeeUrl = Annotated[
    str,
    typer.Option("--payee-url", envvar="HANDOFF_PAYEE_URL", help="Payee wallet service URL"),
]
Amount = Annotated[int, typer.Option("--amount", "-a", help="Amount in sats")]
NetworkOpt = Annotated[
    str | None,
    typer.Option(
        "--network",
        "-n",
        envvar="HANDOFF_NETWORK",
        help="Expected network (main | test); checked against both wallets",
    ),
]
DeriveOn = Annotated[
    DeriveSide, typer.Option("--derive-on", help="Wallet that derives the payment key")
]
Description = Annotated[str, typer.Option("--description", help="Action description")]
Labels = Annotated[list[str] | None, typer.Option("--label", help="Action label (repeatable)")]
LogLevel = Annotated[str, typer.Option("--log-level", "-l", help="Log level")]


def _build(
    payer_url: str,
    payee_url: str,
    network: str | None,
    amount: int,
    derive_on: DeriveSide,
    description: str,
    labels: list[str] | None,
) -> tuple[WalletEndpoint, WalletEndpoint, HandoffConfig]:
    try:
        payer = EndpointConfig(name="payer", storage_url=payer_url, network=network)
        payee = EndpointConfig(name="payee", storage_url=payee_url, network=network)
        config = HandoffConfig(
            amount=amount,
            description=description,
            derive_on=derive_on,
            **({"labels": labels} if labels else {}),
        )
    except ValidationError as e:
        logger.error(f"Invalid handoff parameters: {e}")
        raise typer.Exit(1) from e
    return endpoint_from_config(payer), endpoint_from_config(payee), config


@app.command()
def transfer(
    amount: Amount,
    payer_url: PayerUrl = "http://127.0.0.1:3321",
    payee_url: PayeeUrl = "http://127.0.0.1:3322",
    network: NetworkOpt = None,
    derive_on: DeriveOn = DeriveSide.PAYER,
    description: Description = "payment handoff",
    label: Labels = None,
    log_level: LogLevel = "INFO",
) -> None:
    """Pay AMOUNT sats from the payer wallet into the payee wallet."""
    setup_logging(log_level)
    payer, payee, config = _build(
        payer_url, payee_url, network, amount, derive_on, description, label
    )
    _run(_transfer(payer, payee, config))


async def _transfer(payer: WalletEndpoint, payee: WalletEndpoint, config: HandoffConfig) -> None:
    try:
        handoff = PaymentHandoff(payer, payee, config)
        session = await handoff.run()

        print("\n" + "=" * 80)
        print("HANDOFF COMPLETE")
        print("=" * 80)
        print(f"Amount:    {session.amount:,} sats")
        print(f"Network:   {session.network.value if session.network else 'unknown'}")
        print(f"Txid:      {session.action.txid if session.action else 'unknown'}")
        print(f"Payer:     ...{public_key_suffix(session.payer_identity_key)}")
        print(f"Payee:     ...{public_key_suffix(session.payee_identity_key)}")
        print("=" * 80 + "\n")
    finally:
        await payer.close()
        await payee.close()


@app.command()
def send(
    amount: Amount,
    output: Annotated[
        Path, typer.Option("--output", "-o", help="Where to write the handoff payload")
    ],
    payer_url: PayerUrl = "http://127.0.0.1:3321",
    payee_url: PayeeUrl = "http://127.0.0.1:3322",
    network: NetworkOpt = None,
    derive_on: DeriveOn = DeriveSide.PAYER,
    description: Description = "payment handoff",
    label: Labels = None,
    log_level: LogLevel = "INFO",
) -> None:
    """Fund a payment and write the payload for the payee to claim later."""
    setup_logging(log_level)
    payer, payee, config = _build(
        payer_url, payee_url, network, amount, derive_on, description, label
    )
    _run(_send(payer, payee, config, output))


async def _send(
    payer: WalletEndpoint, payee: WalletEndpoint, config: HandoffConfig, output: Path
) -> None:
    try:
        handoff = PaymentHandoff(payer, payee, config, transport=FileTransport(output))
        payload = await handoff.prepare()
        print(f"\nPayload for {payload.amount:,} sats written to {output}")
        print(f"Claim it with: wb-handoff receive --payload {output}\n")
    finally:
        await payer.close()
        await payee.close()


@app.command()
def receive(
    payload: Annotated[
        Path, typer.Option("--payload", "-i", help="Handoff payload file to claim")
    ],
    payee_url: PayeeUrl = "http://127.0.0.1:3322",
    network: NetworkOpt = None,
    description: Description = "payment handoff",
    label: Labels = None,
    log_level: LogLevel = "INFO",
) -> None:
    """Claim a handoff payload into the payee wallet."""
    setup_logging(log_level)
    try:
        payee_config = EndpointConfig(name="payee", storage_url=payee_url, network=network)
    except ValidationError as e:
        logger.error(f"Invalid payee endpoint: {e}")
        raise typer.Exit(1) from e
    _run(_receive(endpoint_from_config(payee_config), payload, description, label))


async def _receive(
    payee: WalletEndpoint, path: Path, description: str, labels: list[str] | None
) -> None:
    try:
        payload = await FileTransport(path).receive()
        result = await PaymentHandoff.receive(payee, payload, description, labels)
        if not result.accepted:
            return
        claimed = await find_claimed_output(payee.wallet, payload)
        if claimed is None:
            print(f"\nClaimed payment into {payee.name}\n")
            return
        if claimed.satoshis != payload.amount:
            logger.warning(
                f"Payload announced {payload.amount:,} sats but output carries "
                f"{claimed.satoshis:,}"
            )
        print(f"\nClaimed {claimed.satoshis:,} sats into {payee.name}\n")
    finally:
        await payee.close()


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except WalletBridgeError as e:
        logger.error(f"Handoff failed: {e.code}: {e}")
        raise typer.Exit(1) from e
    except httpx.HTTPError as e:
        logger.error(f"Wallet unreachable: {e}")
        raise typer.Exit(1) from e


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
