"""Run the billing engine HTTP service: python -m billing_engine."""

import argparse
import os

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Subscription Billing Engine - recurring billing, renewals and payment retries"
    )
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Host to bind to (default: 0.0.0.0)")
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
        default=os.getenv("CONFIG_PATH", "config/billing.yaml"),
        help="Path to billing.yaml with plans and billing settings (default: config/billing.yaml)",
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Only bill when triggered over HTTP or by advancing the virtual clock",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Enable auto-reload for development (default: false)",
    )

    args = parser.parse_args()

    # Read by create_app() and get_config() inside the uvicorn worker
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config
    if args.no_scheduler:
        os.environ["BILLING_SCHEDULER"] = "false"

    uvicorn.run(
        "billing_engine.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
        reload=args.reload,
        access_log=False,  # RequestLoggingMiddleware logs access
    )


if __name__ == "__main__":
    main()
