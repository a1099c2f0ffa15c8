#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading

from app_config.config_loader import Config, ConfigError
from leader_election import CandidateState, ClientEvent, ElectionCandidate


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="ZooKeeper leader election candidate")
    p.add_argument(
        "-c",
        "--config",
        default=None,
        help="Path to config.ini",
    )
    p.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    p.add_argument(
        "--remove-root",
        action="store_true",
        help="Delete the election root and exit instead of joining the election",
    )
    return p.parse_args(argv)


def resolve_config_path(explicit: str | None = None) -> str:
    candidates = []
    if explicit:
        candidates.append(explicit)
    env_cfg_path = os.getenv("CONFIG_PATH")
    if env_cfg_path:
        candidates.append(env_cfg_path)
    env_cfg = os.getenv("CFG")
    if env_cfg:
        candidates.append(env_cfg)
    candidates.extend(("/config/config.ini", "./config.ini", "/app_config/config.ini"))

    for path in candidates:
        if path and os.path.exists(path):
            return os.path.abspath(path)

    return os.path.abspath(candidates[0])


def load_config(path: str) -> Config:
    cfg = Config(path)
    return cfg.with_overrides(
        host=os.getenv("ZK_HOST"),
        root_path=os.getenv("ELECTION_ROOT"),
        candidate_prefix=os.getenv("CANDIDATE_PREFIX"),
    )


def attach_event_logging(candidate: ElectionCandidate, log: logging.Logger):
    candidate.on(
        ClientEvent.CLIENT_CONNECTED, lambda e: log.info("action: connected | host: %s", e.host)
    ).on(
        ClientEvent.CLIENT_DISCONNECTED,
        lambda e: log.info("action: disconnected | host: %s | id: %s", e.host, e.id),
    ).on(
        ClientEvent.NODE_CREATED, lambda e: log.info("action: root_created | path: %s", e.path)
    ).on(
        ClientEvent.CHILD_CREATED,
        lambda e: log.info("action: registered | path: %s | id: %s", e.path, e.id),
    ).on(
        ClientEvent.NODE_CHILDREN_CHANGED,
        lambda e: log.debug("action: candidates_changed | path: %s | id: %s", e.path, e.id),
    ).on(
        ClientEvent.LEADER_CHANGED,
        lambda e: log.info("Leader update | id=%s | am_i_leader=%s", e.id, e.is_leader),
    ).on(
        ClientEvent.NODE_REMOVED, lambda e: log.info("action: root_removed | path: %s", e.path)
    ).on(
        ClientEvent.ERROR, lambda e: log.error("action: election_error | code: %s | err: %s", e.code, e.cause)
    )


def remove_root(candidate: ElectionCandidate, log: logging.Logger, timeout: float) -> int:
    done = threading.Event()
    outcome = {"code": 1}

    def on_removed(_):
        outcome["code"] = 0
        done.set()

    candidate.on(ClientEvent.NODE_REMOVED, on_removed)
    candidate.on(ClientEvent.ERROR, lambda _: done.set())
    candidate.remove_election_root()
    if not done.wait(timeout):
        log.error("Timed out removing election root %s", candidate.election_root)
    return outcome["code"]


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [election-candidate] %(message)s",
    )
    log = logging.getLogger("election-candidate-main")

    cfg_path = resolve_config_path(args.config)
    try:
        cfg = load_config(cfg_path)
    except ConfigError as e:
        log.error("Could not load config: %s", e)
        sys.exit(2)
    log.info("Using config: %s", cfg_path)

    candidate = ElectionCandidate(**cfg.candidate_options())
    attach_event_logging(candidate, log)

    if args.remove_root:
        sys.exit(remove_root(candidate, log, cfg.zookeeper.session_timeout_ms / 1000.0))

    stop_event = threading.Event()

    def shutdown_handler(*_):
        log.info("Shutdown signal received. Initiating graceful shutdown...")
        stop_event.set()

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    closed = threading.Event()
    session_lost = threading.Event()

    def stop_if_session_down(_):
        if candidate.state is CandidateState.DISCONNECTED:
            # no reconnect here; the container supervisor restarts us with a fresh node
            log.warning("No live ZooKeeper session, exiting")
            session_lost.set()
            stop_event.set()

    candidate.on(ClientEvent.CLIENT_DISCONNECTED, lambda _: closed.set())
    candidate.on(ClientEvent.CLIENT_DISCONNECTED, stop_if_session_down)
    candidate.on(ClientEvent.ERROR, stop_if_session_down)

    candidate.start()
    log.info(
        "Candidate started | root=%s | prefix=%s | host=%s",
        cfg.election.root_path,
        cfg.election.candidate_prefix,
        cfg.zookeeper.host,
    )

    try:
        stop_event.wait()
        log.info("Stop event received, starting shutdown process.")
    finally:
        log.info("Closing election candidate...")
        candidate.close()
        closed.wait(timeout=cfg.zookeeper.session_timeout_ms / 1000.0)
        log.info("Graceful shutdown complete. Exiting.")

    if session_lost.is_set():
        sys.exit(1)


if __name__ == "__main__":
    main()
