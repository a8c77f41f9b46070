import asyncio
import logging
import sys

import typer

from .codec import decode
from .config import DEFAULT_ICE, DEFAULT_MINSIG, DEFAULT_SIGNAL_SERVER
from .dial import Conn, dial
from .errors import RtcpipeError
from .models import parse_ice_servers
from .pump import Pipe
from .wormhole import Wormhole

app = typer.Typer(help="netcat-like pipe over WebRTC")


def _setup_logging(verbose: bool) -> None:
    # stdout carries the data; everything else goes to stderr.
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )


async def _pump(conn: Conn) -> None:
    pipe = Pipe(conn, sys.stdin.buffer, sys.stdout.buffer)
    await pipe.run()
    await pipe.close()


@app.command()
def pipe(
    slot: str = typer.Argument(..., help="Slot to meet the peer on"),
    ice: str = typer.Option(DEFAULT_ICE, envvar="RTCPIPE_ICE",
                            help="Comma separated STUN/TURN servers"),
    minsig: str = typer.Option(DEFAULT_MINSIG, envvar="RTCPIPE_MINSIG",
                               help="Signalling server to use"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Pipe stdin to the peer on SLOT and the peer's data to stdout."""
    _setup_logging(verbose)

    async def _run() -> None:
        conn = await dial(slot, minsig, parse_ice_servers(ice))
        await _pump(conn)

    try:
        asyncio.run(_run())
    except RtcpipeError as e:
        typer.echo(f"could not dial: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def wormhole(
    code: str = typer.Argument("", help="Code from the other side; omit to get one"),
    signal: str = typer.Option(DEFAULT_SIGNAL_SERVER, envvar="RTCPIPE_SIGNAL",
                               help="Signalling server to use"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Authenticate the peer with a short code, then pipe stdin/stdout."""
    _setup_logging(verbose)
    if code:
        try:
            decode(code)
        except RtcpipeError as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(1)

    async def _run() -> None:
        wh = await Wormhole.dial(signal, code)
        new_code, pc = await wh.signal()
        if new_code:
            typer.echo(f"{new_code}", err=True)
        conn = Conn(pc)
        fp = await wh.finish()
        typer.echo(f"fingerprint: {fp.hex(' ', 2)}", err=True)
        try:
            await conn.wait_opened()
        finally:
            await wh.close()
        await _pump(conn)

    try:
        asyncio.run(_run())
    except RtcpipeError as e:
        typer.echo(f"could not dial: {e}", err=True)
        raise typer.Exit(1)
