"""Prometheus metrics for the ksmtuned daemon."""

import logging
import threading
from typing import Callable

from prometheus_client import Counter, Gauge, start_http_server

from .config import METRICS_INTERVAL_SECONDS
from .option import split_address

logger = logging.getLogger(__name__)

ksm_run = Gauge(
    'ksmtuned_run',
    'Value of the KSM run file (0 stopped, 1 running, 2 pruned)',
    ['node']
)

ksm_pages = Gauge(
    'ksmtuned_pages',
    'KSM page counters',
    ['node', 'type']
)

ksm_full_scans = Gauge(
    'ksmtuned_full_scans',
    'Number of full KSM scans',
    ['node']
)

ksm_stable_nodes = Gauge(
    'ksmtuned_stable_nodes',
    'KSM stable node chains and duplicates',
    ['node', 'type']
)

collect_errors = Counter(
    'ksmtuned_metrics_collect_errors_total',
    'Failed attempts to read KSM counters',
    ['node']
)


def update(node_name: str, stats) -> None:
    """Publish one KsmStats sample."""
    ksm_run.labels(node_name).set(stats.run)
    ksm_pages.labels(node_name, "shared").set(stats.shared)
    ksm_pages.labels(node_name, "sharing").set(stats.sharing)
    ksm_pages.labels(node_name, "unshared").set(stats.unshared)
    ksm_pages.labels(node_name, "volatile").set(stats.volatile)
    ksm_full_scans.labels(node_name).set(stats.full_scans)
    ksm_stable_nodes.labels(node_name, "chains").set(stats.stable_node_chains)
    ksm_stable_nodes.labels(node_name, "dups").set(stats.stable_node_dups)


def run(
    ctx,
    address: str,
    collect: Callable,
    node_name: str,
    interval: float = METRICS_INTERVAL_SECONDS,
    serve=start_http_server,
) -> None:
    """
    Serve metrics on address and refresh them every interval.

    Errors are logged and never raised; the loop ends when ctx is cancelled.
    """
    if address:
        try:
            host, port = split_address(address)
            serve(port, addr=host)
            logger.info(f"Serving metrics on {address}")
        except Exception as e:
            logger.error(f"Failed to serve metrics on {address}: {e}")

    while not ctx.cancelled:
        try:
            update(node_name, collect())
        except Exception as e:
            collect_errors.labels(node_name).inc()
            logger.warning(f"Failed to collect ksm metrics: {e}")
        ctx.wait(interval)


def start_metrics(ctx, opt, collect: Callable) -> threading.Thread:
    """Run the metrics loop in a detached daemon thread."""
    thread = threading.Thread(
        target=run,
        args=(ctx, opt.metrics_address, collect, opt.node_name),
        name="metrics",
        daemon=True
    )
    thread.start()
    return thread
