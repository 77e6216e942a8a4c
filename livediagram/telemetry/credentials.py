"""Bearer token resolution for telemetry backends."""

from __future__ import annotations

from typing import Optional

from livediagram.errors import ConfigurationMissing

ARM_AUDIENCE = "https://management.azure.com"
LOG_ANALYTICS_AUDIENCE = "https://api.loganalytics.io"
STORAGE_AUDIENCE = "https://storage.azure.com"


class CredentialProvider:
	"""Turns an opaque caller identity into a bearer token for one audience."""

	def token_for(self, identity: Optional[str], audience: str) -> str:
		raise NotImplementedError


class PassthroughCredentials(CredentialProvider):
	"""
	Forwards the caller identity unchanged.

	Token exchange (on-behalf-of flows) happens outside this service; the
	bearer presented by the caller is assumed to be valid for every audience.
	When there is no caller identity the configured service token is used.
	"""

	def __init__(self, fallback_token: Optional[str] = None) -> None:
		self.fallback_token = fallback_token

	def token_for(self, identity: Optional[str], audience: str) -> str:
		token = identity or self.fallback_token
		if not token:
			raise ConfigurationMissing(f"no credential available for {audience}")
		return token
