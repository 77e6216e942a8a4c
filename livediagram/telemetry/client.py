"""Thin REST client for the management, Log Analytics and Blob Storage APIs."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import requests

from livediagram.config import LiveSettings
from livediagram.errors import SourceUnavailable
from livediagram.telemetry.credentials import (
	ARM_AUDIENCE,
	LOG_ANALYTICS_AUDIENCE,
	STORAGE_AUDIENCE,
	CredentialProvider,
	PassthroughCredentials,
)

logger = logging.getLogger(__name__)

STORAGE_API_VERSION = "2021-08-06"
# Upper bound on paged listings so a misbehaving nextLink chain cannot loop forever
MAX_PAGES = 50


@dataclass
class BlobInfo:
	name: str
	last_modified: Optional[datetime] = None


def table_to_rows(body: Any) -> List[Dict[str, Any]]:
	"""Convert the first table of a query response into a list of row dicts."""
	if not isinstance(body, dict):
		raise SourceUnavailable("query response is not an object")
	if body.get("error"):
		message = body["error"].get("message") if isinstance(body["error"], dict) else body["error"]
		raise SourceUnavailable(f"query failed: {message}")
	tables = body.get("tables") or []
	if not tables:
		return []
	table = tables[0]
	columns = [c.get("name") for c in table.get("columns") or []]
	return [dict(zip(columns, row)) for row in table.get("rows") or []]


class AzureRestClient:
	"""
	Authenticated JSON/XML calls against the cloud REST endpoints.

	Every transport error and every non-2xx response is raised as
	``SourceUnavailable``; callers decide how much of their work to discard.
	"""

	def __init__(
		self,
		settings: LiveSettings,
		credentials: Optional[CredentialProvider] = None,
		session: Optional[requests.Session] = None,
	) -> None:
		self.settings = settings
		self.credentials = credentials or PassthroughCredentials(settings.service_token)
		self.session = session or requests.Session()
		self.timeout = settings.http_timeout_s

	def arm_url(self, path: str) -> str:
		if path.startswith("http"):
			return path
		return f"{self.settings.arm_endpoint}{path}"

	def request(
		self,
		method: str,
		url: str,
		identity: Optional[str],
		*,
		audience: str = ARM_AUDIENCE,
		params: Optional[Dict[str, Any]] = None,
		json_body: Any = None,
		headers: Optional[Dict[str, str]] = None,
	) -> requests.Response:
		token = self.credentials.token_for(identity, audience)
		request_headers = {"Authorization": f"Bearer {token}"}
		if headers:
			request_headers.update(headers)
		try:
			resp = self.session.request(
				method,
				url,
				params=params,
				json=json_body,
				headers=request_headers,
				timeout=self.timeout,
			)
		except requests.RequestException as e:
			raise SourceUnavailable(f"{method} {url} failed: {e}") from e
		if resp.status_code < 200 or resp.status_code >= 300:
			raise SourceUnavailable(f"{method} {url} returned {resp.status_code}", status=resp.status_code)
		return resp

	@staticmethod
	def _json(resp: requests.Response, url: str) -> Any:
		try:
			return resp.json()
		except ValueError as e:
			raise SourceUnavailable(f"{url} returned malformed JSON: {e}") from e

	def get_json(
		self,
		url: str,
		identity: Optional[str],
		*,
		audience: str = ARM_AUDIENCE,
		params: Optional[Dict[str, Any]] = None,
	) -> Any:
		return self._json(self.request("GET", url, identity, audience=audience, params=params), url)

	def post_json(
		self,
		url: str,
		body: Any,
		identity: Optional[str],
		*,
		audience: str = ARM_AUDIENCE,
		params: Optional[Dict[str, Any]] = None,
	) -> Any:
		resp = self.request("POST", url, identity, audience=audience, params=params, json_body=body)
		return self._json(resp, url)

	def list_arm(
		self,
		path: str,
		identity: Optional[str],
		params: Optional[Dict[str, Any]] = None,
	) -> List[Dict[str, Any]]:
		"""GET a management list endpoint and follow ``nextLink`` pages."""
		items: List[Dict[str, Any]] = []
		url: Optional[str] = self.arm_url(path)
		page_params = params
		pages = 0
		while url and pages < MAX_PAGES:
			body = self.get_json(url, identity, params=page_params)
			if not isinstance(body, dict):
				raise SourceUnavailable(f"{url} returned a non-object list response")
			items.extend(body.get("value") or [])
			# nextLink already carries the query string
			url = body.get("nextLink")
			page_params = None
			pages += 1
		return items

	def query_workspace(self, workspace_id: str, kql: str, identity: Optional[str]) -> List[Dict[str, Any]]:
		"""Run a KQL query against a Log Analytics workspace."""
		url = f"{self.settings.log_analytics_endpoint}/v1/workspaces/{workspace_id}/query"
		body = self.post_json(url, {"query": kql}, identity, audience=LOG_ANALYTICS_AUDIENCE)
		return table_to_rows(body)

	def query_app_insights(self, component_id: str, kql: str, identity: Optional[str]) -> List[Dict[str, Any]]:
		"""Run a KQL query against an application telemetry component."""
		url = self.arm_url(f"{component_id}/api/query")
		body = self.post_json(url, {"query": kql}, identity, params={"api-version": "2018-04-20"})
		return table_to_rows(body)

	def _blob_base(self, account: str, container: str) -> str:
		return f"https://{account}.blob.core.windows.net/{container}"

	def list_blobs(
		self,
		account: str,
		container: str,
		identity: Optional[str],
		prefix: Optional[str] = None,
	) -> List[BlobInfo]:
		"""List blobs in a container via the XML listing API, following markers."""
		url = self._blob_base(account, container)
		blobs: List[BlobInfo] = []
		marker: Optional[str] = None
		for _ in range(MAX_PAGES):
			params: Dict[str, Any] = {"restype": "container", "comp": "list"}
			if prefix:
				params["prefix"] = prefix
			if marker:
				params["marker"] = marker
			resp = self.request(
				"GET",
				url,
				identity,
				audience=STORAGE_AUDIENCE,
				params=params,
				headers={"x-ms-version": STORAGE_API_VERSION},
			)
			page, marker = _parse_blob_listing(resp.content)
			blobs.extend(page)
			if not marker:
				break
		return blobs

	def read_blob(self, account: str, container: str, name: str, identity: Optional[str]) -> bytes:
		url = f"{self._blob_base(account, container)}/{name}"
		resp = self.request(
			"GET",
			url,
			identity,
			audience=STORAGE_AUDIENCE,
			headers={"x-ms-version": STORAGE_API_VERSION},
		)
		return resp.content


def _parse_blob_listing(content: bytes):
	try:
		root = ET.fromstring(content)
	except ET.ParseError as e:
		raise SourceUnavailable(f"malformed blob listing: {e}") from e

	blobs: List[BlobInfo] = []
	for blob in root.iter("Blob"):
		name = blob.findtext("Name")
		if not name:
			continue
		modified = None
		raw_modified = blob.findtext("Properties/Last-Modified")
		if raw_modified:
			try:
				modified = parsedate_to_datetime(raw_modified)
			except (TypeError, ValueError):
				logger.debug(f"Unparseable Last-Modified on blob {name}: {raw_modified}")
		blobs.append(BlobInfo(name=name, last_modified=modified))

	marker = root.findtext("NextMarker") or None
	return blobs, marker
