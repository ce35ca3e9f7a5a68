# sigrid: Minimal HTTP client for OpenAI-compatible chat completions (direct or through a gateway), with
# SSE streaming and optional .http request dumps for debugging.

import json
import logging
import os
import pathlib
import time
from typing import Any, Dict, Iterator, Optional

import requests

from . import config
from .errors import PreconditionError, UpstreamError, UpstreamRateLimit
from .settings import get_section

logger = logging.getLogger(__name__)


class ChatCompletionsClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        http_log_dir: Optional[pathlib.Path] = None,
    ) -> None:
        """
        Initialize a chat-completions client with provider autodetection.

        Precedence (highest first):
          1) Constructor args (api_key/model/base_url)
          2) settings['api'] values (provider, api_key, model, base_url)
          3) Environment
             - OpenAI:  OPENAI_API_KEY, LLM_MODEL, OPENAI_BASE_URL
             - Gateway: LLM_GATEWAY_URL, LLM_GATEWAY_API_KEY

        Provider detection:
          - settings['api']['provider'] of 'gateway' or 'openai' wins.
          - Else 'gateway' when LLM_GATEWAY_URL is set and no explicit base_url was given.
          - Otherwise 'openai'.

        OpenAI base URLs get a "/v1" suffix; gateway URLs are used as given.
        """
        self.session = requests.Session()
        api_cfg = get_section(settings or {}, "api")

        provider = str(api_cfg.get("provider") or "").strip().lower() or None
        if provider not in ("gateway", "openai"):
            if config.LLM_GATEWAY_URL and not (base_url or api_cfg.get("base_url")):
                provider = "gateway"
            else:
                provider = "openai"

        if provider == "gateway":
            resolved_api_key = api_key or api_cfg.get("api_key") or config.LLM_GATEWAY_API_KEY
            resolved_base_url = (base_url or api_cfg.get("base_url") or config.LLM_GATEWAY_URL).rstrip("/")
            if not resolved_base_url:
                raise PreconditionError("Gateway provider selected but no URL provided (LLM_GATEWAY_URL or settings.api.base_url).")
        else:
            resolved_api_key = api_key or api_cfg.get("api_key") or config.OPENAI_API_KEY
            resolved_base_url = (base_url or api_cfg.get("base_url") or config.OPENAI_BASE_URL).rstrip("/")
            if not resolved_base_url.endswith("/v1"):
                resolved_base_url = f"{resolved_base_url}/v1"
        if not resolved_api_key:
            raise PreconditionError(f"No API key configured for provider '{provider}'.")

        self.session.headers.update({
            "Authorization": f"Bearer {resolved_api_key}",
            "Content-Type": "application/json",
        })
        self.provider = provider
        self.model = model or api_cfg.get("model") or config.AI_MODEL
        self.base_url = resolved_base_url
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self.http_log_dir = http_log_dir

    @classmethod
    def from_settings(cls, repo_root: pathlib.Path, settings: Dict[str, Any], **kwargs: Any) -> "ChatCompletionsClient":
        """Build a client from workspace settings, enabling .http dumps when logging.httpcalls.enabled is set."""
        http_cfg = get_section(get_section(settings, "logging"), "httpcalls")
        if http_cfg.get("enabled") and "http_log_dir" not in kwargs:
            kwargs["http_log_dir"] = pathlib.Path(repo_root) / (http_cfg.get("dir") or os.path.join(config.SIGRID_DIR, "httpcalls"))
        return cls(settings=settings, **kwargs)

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _dump(self, payload: Dict[str, Any]) -> None:
        if self.http_log_dir is None:
            return
        self.http_log_dir.mkdir(parents=True, exist_ok=True)
        headers = {k: ("Bearer ***" if k.lower() == "authorization" else v) for k, v in self.session.headers.items()}
        dump_http_file(str(self.http_log_dir / f"{int(time.time() * 1000)}-chat.http"), self.chat_url, "POST", headers, payload)

    def _post(self, payload: Dict[str, Any], stream: bool) -> requests.Response:
        self._dump(payload)
        try:
            r = self.session.post(self.chat_url, data=json.dumps(payload), timeout=self.timeout, stream=stream)
        except requests.RequestException as e:
            raise UpstreamError(f"Chat completions transport error: {e}") from e
        if r.status_code == 429:
            raise UpstreamRateLimit(f"Chat completions rate limited: {r.text[:2000]}", body=r.text, headers=dict(r.headers))
        if r.status_code >= 300:
            raise UpstreamError(
                f"Chat completions error {r.status_code}: {r.text[:2000]}",
                status=r.status_code,
                body=r.text,
                headers=dict(r.headers),
            )
        return r

    def create_chat_completion(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST a non-streaming request and return the decoded JSON body."""
        r = self._post(payload, stream=False)
        try:
            return r.json()
        except ValueError as e:
            raise UpstreamError(f"Chat completions returned invalid JSON: {r.text[:2000]}", status=r.status_code) from e

    def stream_chat_completion(self, payload: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        """
        POST a streaming request and return an iterator over decoded SSE chunks.

        The HTTP status is checked before this returns, so rate limits surface to
        the retry layer rather than mid-iteration.
        """
        r = self._post(payload, stream=True)
        return iter_sse_chunks(r)


def iter_sse_chunks(response: requests.Response) -> Iterator[Dict[str, Any]]:
    """Yield JSON objects from 'data:' lines until '[DONE]'; the response is closed on exit."""
    try:
        for line in response.iter_lines(decode_unicode=True):
            if not line or not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                break
            try:
                yield json.loads(data)
            except ValueError:
                logger.warning("Skipping malformed SSE line: %s", data[:200])
    finally:
        response.close()


def dump_http_file(file: str, url: str, method: str, headers: Dict[str, str], obj: Any) -> None:
    """
    Write a human-readable HTTP request dump to disk for debugging.

    Args:
        file: Destination file path for the dump.
        url: The target URL of the request.
        method: HTTP verb (GET/POST/...).
        headers: Request headers that will be sent.
        obj: JSON-serializable body object that will be pretty-printed.

    Notes:
        Best-effort: serialization and I/O errors are logged instead of raised.
    """
    try:
        json_str = json.dumps(obj, indent=2, ensure_ascii=False)
        with open(file, "w", encoding="utf-8") as f:
            f.write(f"{method.upper()} {url}\n")
            for key, value in headers.items():
                f.write(f"{key}: {value}\n")
            f.write("\n")
            f.write(json_str)
        logger.debug("HTTP request dumped to %s", file)
    except TypeError as e:
        logger.warning("Could not serialize request body to JSON: %s", e)
    except OSError as e:
        logger.warning("Could not write HTTP dump %s: %s", file, e)
