from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from calsync.models import ProviderConfig


SECRET_FIELDS = ("password", "bearer_token")


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _normalize(data: dict[str, Any] | None) -> dict[str, Any]:
    data = data or {}
    raw_providers = data.get("providers")
    providers: dict[str, dict[str, Any]] = {}
    if isinstance(raw_providers, dict):
        for key, value in raw_providers.items():
            provider_id = str(key).strip()
            if not provider_id or not isinstance(value, dict):
                continue
            providers[provider_id] = ProviderConfig.from_dict(value).to_dict()
    return {"providers": providers}


class ConfigManager:
    """YAML file holding provider configurations keyed by provider id."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save({})

    def load(self) -> dict[str, ProviderConfig]:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            providers = _normalize(data)["providers"]
            return {key: ProviderConfig.from_dict(value) for key, value in providers.items()}

    def get_provider(self, provider_id: str) -> ProviderConfig:
        providers = self.load()
        if provider_id not in providers:
            raise KeyError(f"Unknown CalDAV provider: {provider_id}")
        return providers[provider_id]

    def _dump(self, payload: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(
                payload,
                handle,
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )

    def save(self, providers: dict[str, ProviderConfig]) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            payload = {"providers": {key: cfg.to_dict() for key, cfg in providers.items()}}
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._dump(payload, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Some bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._dump(payload, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> dict[str, ProviderConfig]:
        with self._lock:
            current = {"providers": {key: cfg.to_dict() for key, cfg in self.load().items()}}
            merged = _normalize(_deep_merge(current, payload))
            providers = {key: ProviderConfig.from_dict(value) for key, value in merged["providers"].items()}
            self.save(providers)
            return providers

    def masked(self) -> dict[str, Any]:
        providers = {key: cfg.to_dict() for key, cfg in self.load().items()}
        for provider in providers.values():
            for secret in SECRET_FIELDS:
                if provider.get(secret):
                    provider[secret] = "***"
        return {"providers": providers}
