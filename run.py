#!/usr/bin/env python3
"""
Harvester Node Manager - Entry Point

Runs the ksmtuned controller for one cluster node: watches the node's
Ksmtuned resource and tunes kernel same-page merging accordingly.

Usage:
    python run.py --node NODE [--kubeconfig PATH] [--threadiness N]
"""

from node_manager.main import run

if __name__ == "__main__":
    run()
