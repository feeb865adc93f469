"""kubemitm command line interface.

A single entry point: resolves the target cluster from the ambient gcloud
and kubectl session and runs the full provisioning sequence.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import TYPE_CHECKING

from pydantic import ValidationError

from kubemitm.config.settings import Settings, get_settings
from kubemitm.observability.logging import configure_logging
from kubemitm.observability.metrics import write_metrics
from kubemitm.orchestrator import Orchestrator, RunReport
from kubemitm.version import __version__

if TYPE_CHECKING:
    from argparse import Namespace


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="kubemitm",
        description="kubemitm - mesh-aware mitmproxy provisioning for GKE",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  kubemitm                          Provision into the current gcloud/kubectl context
  kubemitm --namespace intercept    Use a different target namespace
  kubemitm --ca-output ./ca.pem     Write the extracted CA somewhere else
  kubemitm --log-format json -v     Debug logs as JSON on stderr

WARNING: grants roles/container.admin to the proxy identity. Authorized testing only.
        """,
    )

    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v for debug logs)",
    )
    parser.add_argument(
        "--namespace",
        "-n",
        type=str,
        default=None,
        help="Target namespace (default: mitmproxy)",
    )
    parser.add_argument(
        "--ca-output",
        type=str,
        default=None,
        help="Local path for the extracted CA certificate",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=None,
        help="Log output format",
    )
    parser.add_argument(
        "--metrics-file",
        type=str,
        default=None,
        help="Write Prometheus metrics for the run to this file",
    )
    parser.add_argument(
        "--skip-credentials",
        action="store_true",
        help="Do not run 'gcloud container clusters get-credentials'",
    )

    return parser


def build_settings(args: Namespace, base: Settings | None = None) -> Settings:
    """Overlay command-line options on the environment-derived settings."""
    settings = base or get_settings()

    proxy_updates: dict[str, object] = {}
    if args.namespace:
        proxy_updates["namespace"] = args.namespace
    if args.ca_output:
        proxy_updates["ca_output_path"] = args.ca_output
    if args.skip_credentials:
        proxy_updates["fetch_credentials"] = False

    observability_updates: dict[str, object] = {}
    if args.log_format:
        observability_updates["log_format"] = args.log_format
    if args.verbose:
        observability_updates["log_level"] = "DEBUG"
    if args.metrics_file:
        observability_updates["metrics_textfile"] = args.metrics_file

    return settings.model_copy(
        update={
            "proxy": settings.proxy.model_copy(update=proxy_updates),
            "observability": settings.observability.model_copy(update=observability_updates),
        }
    )


def print_report(report: RunReport) -> None:
    """Print the per-step summary of a run."""
    print("kubemitm provisioning report")
    print("=" * 40)
    for line in report.summary_lines():
        print(line)
    if report.succeeded and report.proxy is not None:
        print()
        print(f"Proxy endpoint: {report.proxy.proxy_url}")


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        settings = build_settings(args)
    except ValidationError as e:
        print(f"Error: invalid configuration\n{e}", file=sys.stderr)
        return 1

    configure_logging(
        level=settings.observability.log_level,
        format_type=settings.observability.log_format,
    )

    report = asyncio.run(Orchestrator(settings).run())
    print_report(report)

    if settings.observability.metrics_textfile:
        write_metrics(settings.observability.metrics_textfile)

    return 0 if report.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
