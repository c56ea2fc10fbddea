"""Model acquisition: cached artifact, remote download and bundled fallback.

A single :class:`ModelManager` owns the live :class:`ModelSession`. Loads are
single-flight: a caller arriving while a load is running waits for that load
and observes its outcome instead of starting another download. Failed loads
are retried on a daemon timer until ``max_attempts`` is reached, after which
the manager stays failed until :meth:`ModelManager.retry_load_model` is
called.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterable
from urllib.parse import urljoin

import onnxruntime as ort
import requests

from .types import CorruptArtifactError, LoadState, ModelStatus, NetworkError


logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 3.0
DEFAULT_DOWNLOAD_TIMEOUT = 120.0

SOURCE_NONE = "none"
SOURCE_CACHE = "cache"
SOURCE_DOWNLOAD = "download"
SOURCE_LOCAL = "local_fallback"

_CHUNK_SIZE = 64 * 1024
_UNKNOWN_LENGTH_LOG_STEP = 5 * 1024 * 1024


class ModelSession:
    """Loaded inference graph with its declared input and output names."""

    def __init__(self, runtime: Any, *, serialize_runs: bool = False) -> None:
        self._runtime = runtime
        self.input_names = tuple(str(node.name) for node in runtime.get_inputs())
        self.output_names = tuple(str(node.name) for node in runtime.get_outputs())
        self._run_lock = threading.Lock() if serialize_runs else None

    def run(self, output_names: list[str], feeds: dict[str, Any]) -> list[Any]:
        if self._run_lock is None:
            return self._runtime.run(output_names, feeds)
        with self._run_lock:
            return self._runtime.run(output_names, feeds)


def create_onnx_runtime(path: Path) -> Any:
    return ort.InferenceSession(str(path), providers=["CPUExecutionProvider"])


class ArtifactCache:
    """Downloaded model weights stored at a fixed path."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @property
    def partial_path(self) -> Path:
        return self._path.with_name(self._path.name + ".part")

    def exists(self) -> bool:
        return self._path.is_file()

    def remove(self) -> bool:
        removed = False
        for candidate in (self._path, self.partial_path):
            try:
                candidate.unlink()
            except FileNotFoundError:
                continue
            removed = removed or candidate == self._path
        return removed

    def write(self, chunks: Iterable[bytes]) -> int:
        """Write ``chunks`` to a temporary file, then move it into place.

        A crash mid-download leaves only the ``.part`` file behind, which is
        never treated as a cache hit.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        partial = self.partial_path
        written = 0
        try:
            with partial.open("wb") as handle:
                for chunk in chunks:
                    if not chunk:
                        continue
                    handle.write(chunk)
                    written += len(chunk)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(partial, self._path)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return written


class ModelManager:
    def __init__(
        self,
        cache_path: Path,
        fallback_path: Path,
        model_url: str,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        http: requests.Session | None = None,
        runtime_factory: Callable[[Path], Any] = create_onnx_runtime,
        serialize_runs: bool = False,
    ) -> None:
        self.cache = ArtifactCache(Path(cache_path))
        self.fallback_path = Path(fallback_path)
        self.model_url = model_url
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay = max(0.0, float(retry_delay))
        self.download_timeout = float(download_timeout)
        self.http = http or requests.Session()
        self.runtime_factory = runtime_factory
        self.serialize_runs = serialize_runs

        self._lock = threading.Lock()
        self._state = LoadState.UNLOADED
        self._session: ModelSession | None = None
        self._source = SOURCE_NONE
        self._attempts = 0
        self._flight: threading.Event | None = None
        self._retry_timer: threading.Timer | None = None
        self._reload_requested = False
        self._closed = False

    @property
    def session(self) -> ModelSession | None:
        with self._lock:
            return self._session

    @property
    def source(self) -> str:
        with self._lock:
            return self._source

    @property
    def state(self) -> LoadState:
        with self._lock:
            return self._state

    def snapshot(self) -> tuple[ModelSession | None, str]:
        """Return the live session and its source as one consistent pair."""
        with self._lock:
            return self._session, self._source

    def initialize(self) -> ModelStatus:
        with self._lock:
            ready = self._session is not None and not self._reload_requested
        if ready:
            logger.info("Model already loaded source=%s; nothing to initialize", self.source)
            return self.get_status()
        return self.load_model()

    def load_model(self) -> ModelStatus:
        with self._lock:
            flight = self._flight
            leader = flight is None
            if leader:
                flight = threading.Event()
                self._flight = flight
                self._state = LoadState.LOADING
        if not leader:
            logger.info("Model load already in progress; waiting for it to finish")
            flight.wait()
            return self.get_status()

        try:
            self._attempt_load()
        finally:
            with self._lock:
                self._flight = None
            flight.set()
        return self.get_status()

    def retry_load_model(self) -> ModelStatus:
        with self._lock:
            ignore = self._session is not None and not self._reload_requested
            if not ignore:
                self._cancel_retry_locked()
                if self._flight is None:
                    self._attempts = 0
        if ignore:
            logger.info("Model already loaded source=%s; retry request ignored", self.source)
            return self.get_status()
        logger.info("Manual model reload requested")
        return self.load_model()

    def clear_cache(self) -> dict[str, Any]:
        try:
            removed = self.cache.remove()
        except OSError as exc:
            logger.error("Failed to clear model cache %s: %s", self.cache.path, exc)
            return {"success": False, "message": f"Failed to clear model cache: {exc}"}
        with self._lock:
            self._reload_requested = True
        if removed:
            logger.info("Cleared cached model %s", self.cache.path)
            return {"success": True, "message": "Model cache cleared"}
        logger.info("No cached model at %s to clear", self.cache.path)
        return {"success": True, "message": "No cached model to clear"}

    def get_status(self) -> ModelStatus:
        cached = self.cache.exists()
        local_exists = self.fallback_path.is_file()
        with self._lock:
            session = self._session
            return ModelStatus(
                is_loaded=session is not None,
                load_attempts=self._attempts,
                max_attempts=self.max_attempts,
                is_loading=self._flight is not None,
                model_source=self._source,
                cached=cached,
                local_exists=local_exists,
                input_names=session.input_names if session is not None else (),
                output_names=session.output_names if session is not None else (),
            )

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._cancel_retry_locked()

    def _attempt_load(self) -> None:
        try:
            session, source = self._acquire()
        except Exception as exc:
            self._record_failure(exc)
            return
        with self._lock:
            self._session = session
            self._source = source
            self._state = LoadState.LOADED
            self._attempts = 0
            self._reload_requested = False
            self._cancel_retry_locked()
        logger.info(
            "Model loaded source=%s inputs=%s outputs=%s",
            source,
            list(session.input_names),
            list(session.output_names),
        )

    def _acquire(self) -> tuple[ModelSession, str]:
        failure: Exception | None = None
        if self.cache.exists():
            logger.info("Loading cached model from %s", self.cache.path)
            try:
                return self._build_session(self.cache.path), SOURCE_CACHE
            except CorruptArtifactError as exc:
                logger.warning("Cached model is unusable: %s", exc)
                failure = exc
        else:
            logger.info("No cached model at %s", self.cache.path)

        try:
            self._download()
            return self._build_session(self.cache.path), SOURCE_DOWNLOAD
        except (NetworkError, CorruptArtifactError, OSError) as exc:
            logger.warning("Remote model acquisition failed: %s", exc)
            failure = exc

        if self.fallback_path.is_file():
            logger.info("Loading bundled fallback model from %s", self.fallback_path)
            return self._build_session(self.fallback_path), SOURCE_LOCAL
        logger.warning("No bundled fallback model at %s", self.fallback_path)
        raise failure

    def _build_session(self, path: Path) -> ModelSession:
        try:
            runtime = self.runtime_factory(path)
            return ModelSession(runtime, serialize_runs=self.serialize_runs)
        except Exception as exc:
            raise CorruptArtifactError(f"Cannot create a session from {path}: {exc}") from exc

    def _download(self) -> None:
        if not self.model_url:
            raise NetworkError("No model URL configured")
        logger.info("Downloading model from %s", self.model_url)
        deadline = time.monotonic() + self.download_timeout
        response = self._request(self.model_url)
        try:
            if 300 <= response.status_code < 400:
                location = response.headers.get("Location")
                response.close()
                if not location:
                    raise NetworkError(
                        f"Redirect {response.status_code} without a Location header"
                    )
                target = urljoin(self.model_url, location)
                logger.info("Following redirect to %s", target)
                response = self._request(target)
                if 300 <= response.status_code < 400:
                    raise NetworkError("Redirect chains are not supported")
            if not 200 <= response.status_code < 300:
                raise NetworkError(f"Model download failed with HTTP {response.status_code}")
            total = _content_length(response)
            try:
                written = self.cache.write(self._stream(response, total, deadline))
            except requests.RequestException as exc:
                raise NetworkError(f"Model download interrupted: {exc}") from exc
        finally:
            response.close()
        logger.info("Model downloaded to %s bytes=%d", self.cache.path, written)

    def _request(self, url: str) -> requests.Response:
        try:
            return self.http.get(
                url,
                stream=True,
                allow_redirects=False,
                timeout=self.download_timeout,
            )
        except requests.Timeout as exc:
            raise NetworkError(f"Timed out connecting to {url}") from exc
        except requests.RequestException as exc:
            raise NetworkError(f"Failed to reach {url}: {exc}") from exc

    def _stream(
        self,
        response: requests.Response,
        total: int | None,
        deadline: float,
    ) -> Iterable[bytes]:
        received = 0
        next_mark = 10 if total else _UNKNOWN_LENGTH_LOG_STEP
        for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
            if time.monotonic() > deadline:
                raise NetworkError(
                    f"Model download exceeded {self.download_timeout:.0f}s timeout"
                )
            received += len(chunk)
            if total:
                percent = received * 100 // total
                if percent >= next_mark:
                    logger.info("Model download progress %d%% (%d/%d bytes)", percent, received, total)
                    next_mark = (percent // 10 + 1) * 10
            elif received >= next_mark:
                logger.info("Model download progress %d bytes", received)
                next_mark += _UNKNOWN_LENGTH_LOG_STEP
            yield chunk

    def _record_failure(self, exc: Exception) -> None:
        timer: threading.Timer | None = None
        with self._lock:
            self._attempts += 1
            attempts = self._attempts
            self._state = LoadState.FAILED
            if attempts < self.max_attempts and not self._closed:
                self._cancel_retry_locked()
                timer = threading.Timer(self.retry_delay, self._retry_from_timer)
                timer.daemon = True
                self._retry_timer = timer
        if timer is not None:
            logger.warning(
                "Model load failed (attempt %d/%d): %s; retrying in %.1fs",
                attempts,
                self.max_attempts,
                exc,
                self.retry_delay,
            )
            timer.start()
        else:
            logger.error(
                "Model load failed (attempt %d/%d): %s; waiting for a manual retry",
                attempts,
                self.max_attempts,
                exc,
            )

    def _retry_from_timer(self) -> None:
        with self._lock:
            self._retry_timer = None
            if self._closed:
                return
            if self._session is not None and not self._reload_requested:
                logger.info("Skipping scheduled retry; model already loaded from %s", self._source)
                return
        logger.info("Retrying model load")
        self.load_model()

    def _cancel_retry_locked(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None


def _content_length(response: requests.Response) -> int | None:
    value = response.headers.get("Content-Length")
    try:
        length = int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
    return length if length and length > 0 else None


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_RETRY_DELAY",
    "DEFAULT_DOWNLOAD_TIMEOUT",
    "SOURCE_NONE",
    "SOURCE_CACHE",
    "SOURCE_DOWNLOAD",
    "SOURCE_LOCAL",
    "ArtifactCache",
    "ModelManager",
    "ModelSession",
    "create_onnx_runtime",
]
