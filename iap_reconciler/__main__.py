"""Entry point for running the reconciler as a module."""

import argparse
import os
import sys

import uvicorn


def build_parser() -> argparse.ArgumentParser:
    """Command line options; defaults come from the environment."""
    parser = argparse.ArgumentParser(
        description="IAP Reconciler - keeps local entitlements in step with the billing service"
    )
    parser.add_argument(
        "--host",
        default=os.getenv("HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "8080")),
        help="Port to bind to (default: 8080)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=os.getenv("LOG_FORMAT", "json"),
        help="Log output format (default: json)",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "config/reconciler.yaml"),
        help="Path to reconciler.yaml (default: config/reconciler.yaml)",
    )
    storage = parser.add_mutually_exclusive_group()
    storage.add_argument(
        "--state-dir",
        default=os.getenv("STATE_DIR"),
        help="Directory for the entitlement cache and throttle mark (default: from config)",
    )
    storage.add_argument(
        "--in-memory",
        action="store_true",
        help="Keep entitlements and the throttle mark in memory only",
    )
    parser.add_argument(
        "--reconcile-on-start",
        choices=["yes", "no"],
        default=os.getenv("RECONCILE_ON_START", "yes"),
        help="Connect to the billing service and reconcile at startup (default: yes)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Enable auto-reload for development (default: false)",
    )
    return parser


def export_settings(args: argparse.Namespace) -> None:
    """Hand parsed options to the app through environment variables."""
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config
    os.environ["RECONCILE_ON_START"] = args.reconcile_on_start
    if args.in_memory:
        os.environ["STATE_DIR"] = ""
    elif args.state_dir:
        os.environ["STATE_DIR"] = args.state_dir


def main() -> None:
    """Main entry point for the IAP reconciler."""
    args = build_parser().parse_args()
    export_settings(args)

    if args.log_format == "console":
        print("=" * 60)
        print("IAP Reconciler v0.1.0")
        print("=" * 60)
        print(f"Host: {args.host}")
        print(f"Port: {args.port}")
        print(f"Log Level: {args.log_level}")
        print(f"Config: {args.config}")
        print(f"State: {'memory' if args.in_memory else (args.state_dir or 'from config')}")
        print("=" * 60)

    try:
        uvicorn.run(
            "iap_reconciler.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            reload=args.reload,
            access_log=False,  # request logging middleware covers this
        )
    except KeyboardInterrupt:
        print("\nShutting down gracefully...")
        sys.exit(0)
    except Exception as e:
        print(f"Failed to start reconciler: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
