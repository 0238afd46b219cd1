"""Entry point: python -m ambient [serve|status|stop]

- "serve":  Run the daemon in the foreground (default)
- "status": Print the running daemon's status JSON
- "stop":   Ask the running daemon to shut down
"""

from __future__ import annotations

import asyncio
import logging
import sys

from ambient.config import AmbientConfig, load_config
from ambient.protocol import RequestType, ResponseType, format_request, parse_response


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


async def _request(config: AmbientConfig, request_type: RequestType) -> int:
    """Send one request and print every frame until "done"."""
    try:
        reader, writer = await asyncio.open_unix_connection(str(config.daemon.socket_path))
    except OSError as e:
        print(f"Ambient daemon not reachable at {config.daemon.socket_path}: {e}", file=sys.stderr)
        return 1

    code = 0
    try:
        writer.write(format_request(request_type))
        await writer.drain()
        while line := await reader.readline():
            response = parse_response(line)
            if response.type is ResponseType.ERROR:
                print(response.data, file=sys.stderr)
                code = 1
            elif response.data:
                print(response.data)
            if response.type is ResponseType.DONE:
                break
    finally:
        writer.close()
    return code


def _run_serve() -> None:
    """Daemon mode: socket server + scheduler."""
    config = load_config()
    _setup_logging(config.log_level)

    from ambient.daemon import AmbientDaemon

    daemon = AmbientDaemon(config)
    try:
        asyncio.run(daemon.run())
    except OSError as e:
        logging.getLogger("ambient").error("Failed to start daemon: %s", e)
        sys.exit(1)


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else "serve"

    if cmd == "serve":
        _run_serve()
    elif cmd in ("status", "stop"):
        config = load_config()
        _setup_logging(config.log_level)
        request_type = RequestType.STATUS if cmd == "status" else RequestType.SHUTDOWN
        sys.exit(asyncio.run(_request(config, request_type)))
    else:
        print("Usage: python -m ambient [serve|status|stop]")
        print("  serve   Run the daemon (default)")
        print("  status  Show daemon status")
        print("  stop    Stop the daemon")
        sys.exit(1)


if __name__ == "__main__":
    main()
