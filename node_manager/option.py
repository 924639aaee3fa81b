"""Command line and environment options for the node manager."""

import argparse
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from . import friendly_version
from .config import (
    DEFAULT_KSM_PATH,
    DEFAULT_METRICS_ADDRESS,
    DEFAULT_PROFILER_ADDRESS,
    DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
    DEFAULT_THREADINESS,
)

LOG_FORMATS = ("text", "simple", "json")

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Options:
    """Parsed process options. Read-only once created."""
    node_name: str
    kubeconfig: str = ""
    profiler_address: str = DEFAULT_PROFILER_ADDRESS
    metrics_address: str = DEFAULT_METRICS_ADDRESS
    log_format: str = "text"
    debug: bool = False
    trace: bool = False
    threadiness: int = DEFAULT_THREADINESS
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS
    ksm_path: str = DEFAULT_KSM_PATH


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer: {value!r}")
    return number


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value!r}")
    return number


def _env_bool(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").strip().lower() in _TRUE_VALUES


def build_parser(environ: Mapping[str, str]) -> argparse.ArgumentParser:
    """Build the argument parser, taking defaults from the environment."""
    parser = argparse.ArgumentParser(
        prog="harvester-node-manager",
        description=(
            "Harvester Node Manager, to help with cluster node configuration. "
            "Runs the ksmtuned controller for one node."
        ),
    )
    parser.add_argument(
        "--kubeconfig", "-k",
        default=environ.get("KUBECONFIG", ""),
        help="Kubernetes config file, e.g. $HOME/.kube/config (env: KUBECONFIG)"
    )
    parser.add_argument(
        "--node", "-n",
        dest="node_name",
        default=environ.get("NODENAME", ""),
        help="Name of the node this process manages (env: NODENAME)"
    )
    parser.add_argument(
        "--profile-listen-address",
        dest="profiler_address",
        default=DEFAULT_PROFILER_ADDRESS,
        help=f"Address to listen on for profiling, empty to disable (default: {DEFAULT_PROFILER_ADDRESS})"
    )
    parser.add_argument(
        "--metrics-listen-address",
        dest="metrics_address",
        default=DEFAULT_METRICS_ADDRESS,
        help=f"Address to serve metrics on, empty to disable (default: {DEFAULT_METRICS_ADDRESS})"
    )
    parser.add_argument(
        "--log-format",
        choices=LOG_FORMATS,
        default=environ.get("NDM_LOG_FORMAT", "text") or "text",
        help="Log format (env: NDM_LOG_FORMAT, default: text)"
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        default=_env_bool(environ, "TRACE"),
        help="Enable trace logs (env: TRACE)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=_env_bool(environ, "DEBUG"),
        help="Enable debug logs (env: DEBUG)"
    )
    parser.add_argument(
        "--threadiness",
        type=_positive_int,
        default=DEFAULT_THREADINESS,
        help=f"Number of workers per watch engine (default: {DEFAULT_THREADINESS})"
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=_positive_float,
        default=DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
        help="Seconds to wait for a clean stop before forcing exit "
             f"(default: {DEFAULT_SHUTDOWN_TIMEOUT_SECONDS})"
    )
    parser.add_argument(
        "--ksm-path",
        default=DEFAULT_KSM_PATH,
        help=f"KSM sysfs directory (default: {DEFAULT_KSM_PATH})"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {friendly_version()}"
    )
    return parser


def parse_options(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Options:
    """
    Parse options from arguments and environment.

    Exits through argparse with status 2 on invalid input.
    """
    if environ is None:
        environ = os.environ

    parser = build_parser(environ)
    args = parser.parse_args(argv)

    if args.log_format not in LOG_FORMATS:
        # argparse does not check choices against env-provided defaults
        parser.error(f"invalid log format {args.log_format!r}, choose from {', '.join(LOG_FORMATS)}")
    if not args.node_name:
        parser.error("node name is required (--node or NODENAME)")

    return Options(
        node_name=args.node_name,
        kubeconfig=args.kubeconfig,
        profiler_address=args.profiler_address,
        metrics_address=args.metrics_address,
        log_format=args.log_format,
        debug=args.debug,
        trace=args.trace,
        threadiness=args.threadiness,
        shutdown_timeout=args.shutdown_timeout,
        ksm_path=args.ksm_path,
    )


def split_address(address: str):
    """Split "host:port" into (host, port). An empty host means all interfaces."""
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"invalid listen address: {address!r}")
    return host or "0.0.0.0", int(port)
