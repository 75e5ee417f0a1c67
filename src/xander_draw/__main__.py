#!/usr/bin/env python3
"""
Xander Draw - Entry Point

Serves the ingest REST API and the /ws scene sync channel with uvicorn.
"""

import argparse
import logging

from . import config


LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]
MERMAID_CONVERTERS = ["auto", "npx", "none"]


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Live diagram ingest server for a shared Excalidraw canvas",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run on the default port (INGEST_PORT or 3200)
  xander-draw

  # Run on a custom port without the external Mermaid converter
  xander-draw --port 4000 --mermaid-converter none

Note: the npx converter requires Node.js with @excalidraw/mermaid-to-excalidraw
installed. Without it, Mermaid input is handled by the built-in flowchart parser.
"""
    )
    parser.add_argument(
        "--host",
        type=str,
        default=config.INGEST_HOST,
        help=f"Host to bind (default: {config.INGEST_HOST})"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=config.INGEST_PORT,
        help=f"Port to listen on (default: {config.INGEST_PORT})"
    )
    parser.add_argument(
        "--mermaid-converter",
        choices=MERMAID_CONVERTERS,
        default=config.MERMAID_CONVERTER,
        help="External Mermaid converter (default: auto)"
    )
    parser.add_argument(
        "--mermaid-timeout",
        type=float,
        default=config.MERMAID_TIMEOUT,
        help=f"Seconds before the external converter is abandoned (default: {config.MERMAID_TIMEOUT:g})"
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=config.LOG_LEVEL,
        help=f"Log level (default: {config.LOG_LEVEL})"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__import__('xander_draw').__version__}"
    )

    args = parser.parse_args(argv)

    # argparse does not check defaults (read from the environment) against choices
    if args.log_level not in LOG_LEVELS:
        parser.error(f"invalid LOG_LEVEL {args.log_level!r} (choose from {', '.join(LOG_LEVELS)})")
    if args.mermaid_converter not in MERMAID_CONVERTERS:
        parser.error(f"invalid MERMAID_CONVERTER {args.mermaid_converter!r} "
                     f"(choose from {', '.join(MERMAID_CONVERTERS)})")

    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    import uvicorn

    from .mermaid import create_converter
    from .server import create_app

    app = create_app(
        converter=create_converter(args.mermaid_converter, args.mermaid_timeout),
        cors_origins=config.CORS_ORIGINS,
    )

    logging.getLogger("xander_draw").info(
        "REST API: http://%s:%d/api, WebSocket: ws://%s:%d/ws",
        args.host, args.port, args.host, args.port,
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
