"""Entry point for the ovnkube agent."""

from __future__ import annotations

import logging
import os
import signal
import sys
from threading import Event
from typing import Optional

from ovnkube.exceptions import Cancelled, ConfigError
from ovnkube.nbctl import ToolRunner
from ovnkube.nbdb import NbctlBackend

from .config import AgentSettings, load, set_db_auth
from .kube import KubeClient, build_api_client
from .node_agent import NodeAgent
from .ovs import OvsVsctl
from .supervisor import EXIT_FATAL, EXIT_OK, Supervisor

LOG = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_LEVELS = {
    5: logging.DEBUG,
    4: logging.INFO,
    3: logging.WARNING,
    2: logging.ERROR,
    1: logging.CRITICAL,
}


def _setup_logging(loglevel: int, logfile: Optional[str] = None) -> None:
    level = LOG_LEVELS.get(loglevel, logging.INFO)
    handler: logging.Handler
    error = None
    if logfile:
        try:
            directory = os.path.dirname(logfile)
            if directory:
                os.makedirs(directory, exist_ok=True)
            handler = logging.FileHandler(logfile)
        except OSError as exc:
            error = exc
            handler = logging.StreamHandler()
    else:
        handler = logging.StreamHandler()
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[handler], force=True)
    if error is not None:
        LOG.error("Cannot log to %s, using stderr: %s", logfile, error)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def write_pidfile(path: str) -> None:
    """Write our pid to ``path`` unless another live process owns it."""

    if os.path.exists(path):
        with open(path, encoding="utf-8") as handle:
            content = handle.read().strip()
        if content.isdigit() and int(content) != os.getpid() and _pid_alive(int(content)):
            raise ConfigError("pidfile", f"{path} belongs to running process {content}")
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(f"{os.getpid()}\n")


def remove_pidfile(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _run(settings: AgentSettings, stop_event: Event) -> int:
    vsctl = OvsVsctl()
    nbctl = ToolRunner("ovn-nbctl", settings.nb.ctl_args())
    set_db_auth(settings.nb, vsctl, nbctl)
    set_db_auth(settings.sb, vsctl, nbctl)

    kube = KubeClient(build_api_client(settings.kubernetes))

    if settings.init_master or settings.net_controller:
        if settings.init_master:
            host = settings.init_node or settings.init_master
            NodeAgent(
                settings,
                kube,
                stop_event,
                node=host,
                gateway=bool(settings.init_node),
                vsctl=vsctl,
            ).start()
        supervisor = Supervisor(settings.topology, kube, NbctlBackend(nbctl), stop_event)
        return supervisor.run()

    if settings.init_node:
        try:
            NodeAgent(settings, kube, stop_event, vsctl=vsctl).setup()
        except Cancelled:
            return EXIT_OK
        while not stop_event.is_set():
            stop_event.wait(1.0)
        return EXIT_OK

    LOG.error("Nothing to do: pass --init-master, --init-node or --net-controller")
    return EXIT_FATAL


def main(argv: Optional[list] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    try:
        settings = load(argv, OvsVsctl())
    except ConfigError as exc:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        LOG.error("Invalid configuration: %s", exc)
        return EXIT_FATAL

    _setup_logging(settings.loglevel, settings.logfile)

    if settings.pidfile:
        try:
            write_pidfile(settings.pidfile)
        except ConfigError as exc:
            LOG.error("%s", exc)
            return EXIT_FATAL

    stop_event = Event()

    def _shutdown(signum, frame):  # pragma: no cover - signal handler
        LOG.info("received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        code = _run(settings, stop_event)
    except ConfigError as exc:
        LOG.error("Invalid configuration: %s", exc)
        code = EXIT_FATAL
    finally:
        if settings.pidfile:
            remove_pidfile(settings.pidfile)

    LOG.info("ovnkube stopped with exit code %d", code)
    return code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
