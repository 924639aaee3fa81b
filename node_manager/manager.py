"""
Lifecycle orchestration of the node manager.

Builds the Kubernetes configuration and the two watch-engine factories,
registers the ksmtuned controller, starts the engines, waits for shutdown
and stops the controller.
"""

import logging
import os
import sys
import threading

from kubernetes import client, config

from .controllers import KsmtunedFactory, NodeFactory, start_all
from .errors import (
    ConfigBuildError,
    FactoryError,
    RegistrationError,
    StartError,
    StopError,
)
from .ksmtuned import register
from .metrics import start_metrics

logger = logging.getLogger(__name__)


def build_config(kubeconfig: str = "") -> client.Configuration:
    """
    Build a client configuration from a kubeconfig path.

    Without a path the in-cluster configuration is tried first, then the
    default kubeconfig location.
    """
    cfg = client.Configuration()
    try:
        if kubeconfig:
            config.load_kube_config(config_file=kubeconfig, client_configuration=cfg)
            logger.info(f"Loaded kubeconfig from {kubeconfig}")
        else:
            try:
                config.load_incluster_config(client_configuration=cfg)
                logger.info("Loaded in-cluster configuration")
            except config.ConfigException:
                config.load_kube_config(client_configuration=cfg)
                logger.info("Loaded kubeconfig from default location")
    except Exception as e:
        raise ConfigBuildError(f"Error building config from flags: {e}") from e
    return cfg


class Manager:
    """Runs the ksmtuned controller for one node until shutdown."""

    def __init__(
        self,
        opt,
        build_config=build_config,
        node_factory=NodeFactory.from_config,
        ksmtuned_factory=KsmtunedFactory.from_config,
        register=register,
        start_all=start_all,
        start_metrics=start_metrics,
        force_exit=os._exit,
    ):
        self.opt = opt
        self.build_config = build_config
        self.node_factory = node_factory
        self.ksmtuned_factory = ksmtuned_factory
        self.register = register
        self.start_all = start_all
        self.start_metrics = start_metrics
        self.force_exit = force_exit

    def _build_factory(self, build, cfg, what: str):
        try:
            return build(cfg)
        except FactoryError:
            raise
        except Exception as e:
            raise FactoryError(f"error building {what} controllers: {e}") from e

    def run(self, ctx) -> None:
        """
        Run until ctx is cancelled, then stop the ksmtuned controller.

        Exits the process if the client configuration cannot be built; raises
        FactoryError, RegistrationError, StartError or StopError otherwise.
        """
        opt = self.opt

        try:
            cfg = self.build_config(opt.kubeconfig)
        except ConfigBuildError as e:
            logger.critical(str(e))
            sys.exit(1)

        nodes = self._build_factory(self.node_factory, cfg, "node")
        ksmtuneds = self._build_factory(self.ksmtuned_factory, cfg, "harvester-node-manager")

        try:
            controller = self.register(
                ctx,
                opt.node_name,
                ksmtuneds.ksmtuned(),
                nodes.node(),
                ksm_path=opt.ksm_path,
            )
        except RegistrationError:
            raise
        except Exception as e:
            raise RegistrationError(f"failed to register ksmtuned controller: {e}") from e

        try:
            self.start_metrics(ctx, opt, controller.ksmtuned.stats)
        except Exception as e:
            logger.error(f"Failed to start metrics: {e}")

        try:
            self.start_all(ctx, opt.threadiness, ksmtuneds, nodes)
        except StartError:
            raise
        except Exception as e:
            raise StartError(f"error starting: {e}") from e

        logger.info(f"Node manager running for node {opt.node_name} with threadiness {opt.threadiness}")

        ctx.done()

        logger.info("Shutdown requested, stopping ksmtuned controller")
        self.stop(controller)

    def stop(self, controller) -> None:
        """Stop controller, forcing process exit if it takes longer than the shutdown timeout."""
        watchdog = threading.Timer(self.opt.shutdown_timeout, self._force_exit)
        watchdog.daemon = True
        watchdog.start()
        try:
            controller.stop()
        except Exception as e:
            raise StopError(f"failed to stop ksmtuned controller: {e}") from e
        finally:
            watchdog.cancel()

    def _force_exit(self) -> None:
        logger.critical(f"Ksmtuned controller did not stop within {self.opt.shutdown_timeout}s, forcing exit")
        self.force_exit(1)
