"""Generation provider clients for fal.ai and Replicate."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import httpx

from config import require_provider_key, settings

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """Raised when a provider call fails or returns an unusable payload."""

    def __init__(self, provider: str, detail: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{provider}: {detail}")
        self.provider = provider
        self.detail = detail
        self.status_code = status_code


class BaseImageProvider(ABC):
    name: str

    @abstractmethod
    async def run(self, model: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Run `model` with `payload` and return the provider's JSON response."""
        raise NotImplementedError


def _error_detail(response: httpx.Response) -> str:
    text = (response.text or "").strip()
    return text[:500] if text else response.reason_phrase


class FalProvider(BaseImageProvider):
    """Synchronous fal.ai endpoint calls (`https://fal.run/<model>`)."""

    name = "fal"

    def __init__(self, client: httpx.AsyncClient, *, api_key: Optional[str] = None, base_url: str = "https://fal.run") -> None:
        self.client = client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    async def run(self, model: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            api_key = self.api_key or require_provider_key(self.name)
        except ValueError as exc:
            raise ProviderError(self.name, str(exc)) from exc

        started_at = time.time()
        try:
            response = await self.client.post(
                f"{self.base_url}/{model}",
                headers={"Authorization": f"Key {api_key}", "Content-Type": "application/json"},
                json=payload,
                timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"request to {model} failed: {exc}") from exc

        logger.info(
            "REMOTE fal model=%s status=%s ms=%s",
            model,
            response.status_code,
            int((time.time() - started_at) * 1000),
        )
        if response.status_code >= 400:
            raise ProviderError(self.name, _error_detail(response), status_code=response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(self.name, "response was not JSON", status_code=response.status_code) from exc


class ReplicateProvider(BaseImageProvider):
    """Replicate predictions API; waits synchronously then polls until terminal."""

    name = "replicate"
    TERMINAL_STATUSES = {"succeeded", "failed", "canceled"}
    OFFICIAL_MODELS = frozenset({"black-forest-labs/flux-schnell"})

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_token: Optional[str] = None,
        base_url: str = "https://api.replicate.com/v1",
        poll_interval: Optional[float] = None,
        max_polls: Optional[int] = None,
        versions: Optional[Dict[str, str]] = None,
    ) -> None:
        self.client = client
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.poll_interval = settings.REPLICATE_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.max_polls = settings.REPLICATE_MAX_POLLS if max_polls is None else max_polls
        self.versions = settings.REPLICATE_MODEL_VERSIONS if versions is None else versions
        self._latest_versions: Dict[str, str] = {}

    def _headers(self) -> Dict[str, str]:
        try:
            token = self.api_token or require_provider_key(self.name)
        except ValueError as exc:
            raise ProviderError(self.name, str(exc)) from exc
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Prefer": "wait",
        }

    async def _resolve_version(self, model: str, headers: Dict[str, str]) -> Optional[str]:
        """Version id to pin, or None for official models served by the models endpoint."""
        if ":" in model:
            return model.split(":", 1)[1]
        pinned = self.versions.get(model)
        if pinned:
            return pinned
        if model in self.OFFICIAL_MODELS:
            return None
        if model not in self._latest_versions:
            data = await self._send("GET", f"{self.base_url}/models/{model}", headers)
            latest = data.get("latest_version")
            version = latest.get("id") if isinstance(latest, dict) else None
            if not version:
                raise ProviderError(self.name, f"{model} has no published version")
            self._latest_versions[model] = version
        return self._latest_versions[model]

    async def _create_request(self, model: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Tuple[str, Dict[str, Any]]:
        # Community models only run through /predictions with an explicit version.
        version = await self._resolve_version(model, headers)
        if version:
            return f"{self.base_url}/predictions", {"version": version, "input": payload}
        return f"{self.base_url}/models/{model}/predictions", {"input": payload}

    async def _send(self, method: str, url: str, headers: Dict[str, str], body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self.client.request(
                method,
                url,
                headers=headers,
                json=body,
                timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ProviderError(self.name, _error_detail(response), status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(self.name, "response was not JSON", status_code=response.status_code) from exc
        if not isinstance(data, dict):
            raise ProviderError(self.name, "unexpected response shape", status_code=response.status_code)
        return data

    async def run(self, model: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = self._headers()
        url, body = await self._create_request(model, payload, headers)
        started_at = time.time()
        prediction = await self._send("POST", url, headers, body)

        polls = 0
        while prediction.get("status") not in self.TERMINAL_STATUSES:
            if polls >= self.max_polls:
                raise ProviderError(self.name, f"prediction {prediction.get('id')} did not finish in time")
            poll_url = (prediction.get("urls") or {}).get("get")
            if not poll_url:
                raise ProviderError(self.name, "prediction response is missing a polling url")
            await asyncio.sleep(self.poll_interval)
            prediction = await self._send("GET", poll_url, headers)
            polls += 1

        logger.info(
            "REMOTE replicate model=%s status=%s polls=%s ms=%s",
            model,
            prediction.get("status"),
            polls,
            int((time.time() - started_at) * 1000),
        )
        if prediction.get("status") != "succeeded":
            raise ProviderError(self.name, str(prediction.get("error") or prediction.get("status")))
        return prediction


def build_providers(client: httpx.AsyncClient) -> Dict[str, BaseImageProvider]:
    """Provider registry keyed by the names used in the pipeline table."""
    return {
        FalProvider.name: FalProvider(client),
        ReplicateProvider.name: ReplicateProvider(client),
    }
