"""Caller authentication for the ingestion service.

A simple API-key mechanism: the key determines the subject, so a client
cannot publish samples for someone else's gate. If no mapping is configured
the service runs open (dev mode) and trusts the subject in the request body.

Env vars:
  - EGP_API_KEYS_JSON: JSON dict mapping api_key -> subject_key
  - EGP_API_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import hmac
import json
import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

ENV_API_KEYS_JSON = "EGP_API_KEYS_JSON"
ENV_API_KEYS_FILE = "EGP_API_KEYS_FILE"


@dataclass(frozen=True)
class ApiKeyAuth:
    """API key -> subject_key mapping."""

    api_key_to_subject: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Load the mapping from env/file.

        If configuration is present but malformed, config_error is set so
        callers fail closed.
        """
        mapping: Dict[str, str] = {}
        config_error: Optional[str] = None

        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        configured = bool(raw_json or file_path)

        try:
            if raw_json:
                data = json.loads(raw_json)
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            else:
                data = {}
            if not isinstance(data, dict):
                raise ValueError("API key mapping must be a JSON object")
            mapping = {str(k): str(v) for k, v in data.items()}
        except (OSError, ValueError):
            config_error = "API_KEY_CONFIG_INVALID"
            mapping = {}

        return cls(api_key_to_subject=mapping, configured=configured, config_error=config_error)

    def enabled(self) -> bool:
        return self.configured

    def _lookup(self, api_key: str) -> Optional[str]:
        for k, subject in self.api_key_to_subject.items():
            if hmac.compare_digest(k.encode("utf-8"), api_key.encode("utf-8")):
                return subject
        return None

    def resolve_subject(
        self,
        api_key: Optional[str],
        claimed_subject: Optional[str] = None,
    ) -> Tuple[Optional[str], Optional[str]]:
        """Resolve the caller's subject.

        Returns (subject_key, error). If error is not None, reject the request.
        """
        if self.config_error:
            return None, self.config_error

        if not self.enabled():
            return claimed_subject, None

        if not api_key:
            return None, "API_KEY_REQUIRED"

        subject = self._lookup(api_key)
        if not subject:
            return None, "API_KEY_INVALID"

        if claimed_subject and claimed_subject != subject:
            return None, "SUBJECT_MISMATCH"

        return subject, None
