from __future__ import annotations

import configparser
import os
from dataclasses import dataclass

from leader_election.utils import is_valid_candidate_prefix, is_valid_election_root


@dataclass(frozen=True)
class ZookeeperCfg:
    host: str
    session_timeout_ms: int
    reconnect_spin_delay_ms: int
    retry_count: int


@dataclass(frozen=True)
class ElectionCfg:
    root_path: str
    candidate_prefix: str


class ConfigError(Exception):
    pass


class Config:
    """
    Loads the election settings from an INI file.
    Does not print or export environment variables.
    """

    def __init__(self, ini_path: str):
        self._path = os.path.abspath(ini_path)
        if not os.path.exists(self._path):
            raise ConfigError(f"INI file not found: {self._path}")

        cp = configparser.ConfigParser()
        cp.read(self._path)

        if "zookeeper" not in cp:
            raise ConfigError(f"Section [zookeeper] missing in {self._path}")
        z = cp["zookeeper"]
        try:
            self.zookeeper = ZookeeperCfg(
                host=z.get("host", "localhost:2181"),
                session_timeout_ms=z.getint("session_timeout_ms", 30000),
                reconnect_spin_delay_ms=z.getint("reconnect_spin_delay_ms", 1000),
                retry_count=z.getint("retry_count", 0),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid [zookeeper] value in {self._path}: {e}") from e

        el = cp["election"] if "election" in cp else {}
        self.election = ElectionCfg(
            root_path=el.get("root_path", "/election"),
            candidate_prefix=el.get("candidate_prefix", "guid-n_"),
        )
        self.validate()

    def validate(self):
        if not is_valid_election_root(self.election.root_path):
            raise ConfigError(
                f"root_path must start with '/' and allows a-z, A-Z, 0-9, -, _ "
                f"(got {self.election.root_path!r})"
            )
        if not is_valid_candidate_prefix(self.election.candidate_prefix):
            raise ConfigError(
                f"candidate_prefix allows a-z, A-Z, 0-9, -, _ "
                f"(got {self.election.candidate_prefix!r})"
            )
        if self.zookeeper.session_timeout_ms <= 0:
            raise ConfigError("session_timeout_ms must be positive")
        if self.zookeeper.retry_count < 0:
            raise ConfigError("retry_count must not be negative")

    def with_overrides(
        self,
        host: str | None = None,
        root_path: str | None = None,
        candidate_prefix: str | None = None,
    ) -> "Config":
        """Copy of this config with environment/CLI overrides applied and re-validated."""
        clone = object.__new__(Config)
        clone._path = self._path
        clone.zookeeper = ZookeeperCfg(
            host=host or self.zookeeper.host,
            session_timeout_ms=self.zookeeper.session_timeout_ms,
            reconnect_spin_delay_ms=self.zookeeper.reconnect_spin_delay_ms,
            retry_count=self.zookeeper.retry_count,
        )
        clone.election = ElectionCfg(
            root_path=root_path or self.election.root_path,
            candidate_prefix=candidate_prefix or self.election.candidate_prefix,
        )
        clone.validate()
        return clone

    def candidate_options(self) -> dict:
        """Keyword arguments for ElectionCandidate built from this config."""
        return {
            "host": self.zookeeper.host,
            "election_root": self.election.root_path,
            "candidate_prefix": self.election.candidate_prefix,
            "session_timeout": self.zookeeper.session_timeout_ms,
            "reconnect_spin_delay": self.zookeeper.reconnect_spin_delay_ms,
            "retry_count": self.zookeeper.retry_count,
        }
