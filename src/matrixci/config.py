# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

ENV_PREFIX = "MATRIXCI_"


def _get(env: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    return env.get(ENV_PREFIX + key, default)


@dataclass(frozen=True)
class Settings:
    """
    Runner settings. Defaults < MATRIXCI_* environment < CLI options.
    """
    workers: Optional[int] = None
    artifact_dir: str = ".matrixci/artifacts"
    signing_api_url: Optional[str] = None
    signing_api_token: Optional[str] = None
    signing_organization: str = ""
    signing_project: str = ""
    signing_poll_interval: float = 5.0
    signing_timeout: float = 600.0
    coverage_url: Optional[str] = None
    compare_ref: str = "origin/main"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        workers = _get(env, "WORKERS")
        return cls(
            workers=int(workers) if workers else None,
            artifact_dir=_get(env, "ARTIFACT_DIR", cls.artifact_dir),
            signing_api_url=_get(env, "SIGNING_API_URL"),
            signing_api_token=_get(env, "SIGNING_API_TOKEN"),
            signing_organization=_get(env, "SIGNING_ORGANIZATION", ""),
            signing_project=_get(env, "SIGNING_PROJECT", ""),
            signing_poll_interval=float(_get(env, "SIGNING_POLL_INTERVAL", str(cls.signing_poll_interval))),
            signing_timeout=float(_get(env, "SIGNING_TIMEOUT", str(cls.signing_timeout))),
            coverage_url=_get(env, "COVERAGE_URL"),
            compare_ref=_get(env, "COMPARE_REF", cls.compare_ref),
        )

    def override(self, **values) -> "Settings":
        """Apply CLI options; None means "not given"."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})
