"""Diagnostic HTTP listener exposing thread and stack dumps."""

import logging
import sys
import threading
import traceback
from typing import Optional

from flask import Flask, jsonify
from werkzeug.serving import make_server

from .option import split_address

logger = logging.getLogger(__name__)


def create_app() -> Flask:
    app = Flask("node-manager-profiling")

    @app.route("/healthz")
    def healthz():
        return jsonify({"status": "ok"})

    @app.route("/debug/threads")
    def threads():
        return jsonify([
            {"name": t.name, "ident": t.ident, "daemon": t.daemon, "alive": t.is_alive()}
            for t in threading.enumerate()
        ])

    @app.route("/debug/stacks")
    def stacks():
        names = {t.ident: t.name for t in threading.enumerate()}
        dump = []
        for ident, frame in sys._current_frames().items():
            dump.append(f"Thread {names.get(ident, '?')} ({ident}):")
            dump.extend(line.rstrip() for line in traceback.format_stack(frame))
            dump.append("")
        return "\n".join(dump), 200, {"Content-Type": "text/plain; charset=utf-8"}

    return app


def _serve(address: str) -> None:
    try:
        host, port = split_address(address)
        server = make_server(host, port, create_app(), threaded=True)
    except Exception as e:
        logger.error(f"Profiling listener failed on {address}: {e}")
        return

    logger.info(f"Profiling listener serving on {address}")
    try:
        server.serve_forever()
    except Exception as e:
        logger.error(f"Profiling listener stopped: {e}")


def init_profiling(opt) -> Optional[threading.Thread]:
    """Start the profiling listener in a daemon thread unless disabled."""
    if not opt.profiler_address:
        return None

    thread = threading.Thread(
        target=_serve,
        args=(opt.profiler_address,),
        name="profiling",
        daemon=True
    )
    thread.start()
    return thread
