"""Pseudonymous caller keys: HMAC-SHA256 of the raw caller id under a process-wide salt."""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import threading
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from submitflow.domain.errors import InvalidCallerIdError, SaltNotInitializedError

logger = logging.getLogger(__name__)

SALT_SECRET_TEMPLATE = "{environment}/submit/user-sub-hash-salt"


class IdentityHasher:
    """Deterministic one-way hash of caller identifiers.

    The salt is loaded once by ``initialize()``, from ``USER_SUB_HASH_SALT`` when set
    and otherwise from AWS Secrets Manager. Rotating the salt orphans every record
    stored under the previous one.
    """

    def __init__(
        self,
        salt: Optional[str] = None,
        *,
        environment_name: Optional[str] = None,
        region: str = "eu-west-2",
        secrets_client: Any = None,
    ) -> None:
        self._salt = salt or None
        self.environment_name = environment_name
        self.region = region
        self._secrets_client = secrets_client
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._salt is not None

    def initialize(self) -> None:
        if self._salt is not None:
            return
        with self._lock:
            if self._salt is not None:
                return
            self._salt = self._load_salt()

    def hash(self, raw_id: Any) -> str:
        if not isinstance(raw_id, str) or not raw_id:
            raise InvalidCallerIdError("Invalid caller id: must be a non-empty string")
        if self._salt is None:
            raise SaltNotInitializedError(
                "Salt not initialized; call initialize() at startup or set USER_SUB_HASH_SALT"
            )
        return hmac.new(
            self._salt.encode("utf-8"), raw_id.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    # helpers ---------------------------------------------------------------------

    def _load_salt(self) -> str:
        env_salt = os.getenv("USER_SUB_HASH_SALT")
        if env_salt:
            logger.info("Using USER_SUB_HASH_SALT from environment")
            return env_salt
        if not self.environment_name:
            raise SaltNotInitializedError(
                "ENVIRONMENT_NAME is required to fetch the salt from Secrets Manager"
            )
        secret_name = SALT_SECRET_TEMPLATE.format(environment=self.environment_name)
        logger.info("Fetching salt from Secrets Manager", extra={"secret_name": secret_name})
        try:
            response = self._client().get_secret_value(SecretId=secret_name)
        except (BotoCoreError, ClientError) as exc:
            logger.error(
                "Failed to fetch salt", extra={"secret_name": secret_name, "error": str(exc)}
            )
            raise SaltNotInitializedError(f"Failed to initialize salt: {exc}") from exc
        secret = response.get("SecretString")
        if not secret:
            raise SaltNotInitializedError(f"Secret {secret_name} has no SecretString value")
        return secret

    def _client(self):
        if self._secrets_client is None:
            session = boto3.session.Session()
            self._secrets_client = session.client("secretsmanager", region_name=self.region)
        return self._secrets_client


def from_env() -> IdentityHasher:
    return IdentityHasher(
        salt=os.getenv("USER_SUB_HASH_SALT") or None,
        environment_name=os.getenv("ENVIRONMENT_NAME") or None,
        region=os.getenv("AWS_REGION", "eu-west-2"),
    )
