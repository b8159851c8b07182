"""Entry point for `python -m inkmirror`."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys

logger = logging.getLogger('inkmirror')


def main(argv: list[str] | None = None):
    from dotenv import load_dotenv
    load_dotenv()

    parser = argparse.ArgumentParser(description='Mirror a web page onto an e-ink panel')
    parser.add_argument('--url', default=os.environ.get('INKMIRROR_URL', 'http://localhost:8080'),
                        help='Page to mirror (default: $INKMIRROR_URL or http://localhost:8080)')
    parser.add_argument('--config', metavar='FILE', default=os.environ.get('INKMIRROR_CONFIG'),
                        help='JSON configuration delivered at startup (default: $INKMIRROR_CONFIG)')
    parser.add_argument('--mock', action='store_true',
                        help='Use the simulator panel (implies a default configuration)')
    parser.add_argument('--frames-dir', metavar='DIR',
                        help='Simulator output directory (with --mock)')
    parser.add_argument('--chromium', default=None,
                        help='Chromium executable path')
    parser.add_argument('--host', default='0.0.0.0',
                        help='Host channel bind address (default: 0.0.0.0)')
    parser.add_argument('--port', type=int, default=8000,
                        help='Host channel port (default: 8000)')
    parser.add_argument('--no-web', action='store_true',
                        help='Disable the HTTP host channel')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Debug logging')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    if args.no_web and not (args.config or args.mock):
        parser.error('--no-web needs --config or --mock, otherwise nothing can configure the panel')

    try:
        code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


def _startup_payload(args) -> dict | None:
    """CONFIG payload from --config/--mock, or None to wait for the host."""
    from inkmirror.config import RefreshConfig

    if args.config:
        with open(args.config) as f:
            payload = json.load(f)
        # Validate early; the coordinator re-parses on delivery.
        RefreshConfig.from_payload(payload)
    elif args.mock:
        payload = {}
    else:
        return None
    if args.mock:
        payload['mock'] = True
        if args.frames_dir:
            payload['frames_dir'] = args.frames_dir
    return payload


async def _run(args) -> int:
    from inkmirror.coordinator import RefreshCoordinator
    from inkmirror.errors import ContractViolation, PanelUnavailable, SurfaceUnavailable
    from inkmirror.host import CONFIG, HostChannel
    from inkmirror.surface.browser import CHROMIUM_PATH, BrowserSurface

    try:
        payload = _startup_payload(args)
    except (OSError, ValueError) as exc:
        logger.error("Bad configuration: %s", exc)
        return 2

    surface = BrowserSurface(args.url, executable_path=args.chromium or CHROMIUM_PATH)
    coordinator = RefreshCoordinator(surface)
    channel = HostChannel(coordinator)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    server = None
    code = 0
    try:
        await surface.launch()

        if not args.no_web:
            from inkmirror.web import start_server
            server = start_server(channel, host=args.host, port=args.port)

        if payload is not None:
            await channel.receive(CONFIG, payload)
        else:
            logger.info("Waiting for CONFIG on the host channel")

        waiters = [loop.create_task(coordinator.run_forever()), loop.create_task(stop.wait())]
        if server is not None:
            waiters.append(server)
        done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            if task is not server:
                task.cancel()
        for task in done:
            if task is not server:
                task.result()
    except (SurfaceUnavailable, PanelUnavailable, ContractViolation) as exc:
        logger.error("Stopping: %s", exc)
        code = 1
    finally:
        await coordinator.stop()
        if server is not None and not server.done():
            server.cancel()
            await asyncio.gather(server, return_exceptions=True)
    return code


if __name__ == '__main__':
    main()
