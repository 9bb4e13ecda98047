"""Model loader: fetch, deserialize, and hold the character classification model.

The default artifact is a TorchScript Lite (``.ptl``) module executed by the
PyTorch Lite interpreter. ONNX exports (``.onnx``) run on ONNX Runtime. The
loaded model is returned as a ``ModelHandle`` owned by the caller.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from urllib.parse import urlparse

import httpx
import numpy as np
import torch
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from torch.jit.mobile import _load_for_lite_interpreter

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from mariovision.config import Settings

logger = logging.getLogger(__name__)

HF_SCHEME = "hf://"
_CHUNK_SIZE = 1 << 20


class ModelNotLoadedError(RuntimeError):
    """Raised when classification is attempted before the model is loaded."""

    def __init__(self) -> None:
        super().__init__('Model not loaded. Call "await loader.load()" first')


# ---------------------------------------------------------------------------
# Runtimes
# ---------------------------------------------------------------------------


class ModelRuntime(StrEnum):
    TORCHSCRIPT_LITE = "torchscript_lite"
    ONNX = "onnx"


class InferenceModule(Protocol):
    """Protocol for a deserialized model that can run a forward pass."""

    def forward(self, tensor: torch.Tensor) -> torch.Tensor:
        """Run inference on a [1, 3, H, W] float tensor and return [1, K] scores."""
        ...


class LiteInterpreterModule:
    """TorchScript Lite module loaded with the PyTorch mobile interpreter."""

    def __init__(self, path: Path, device: str) -> None:
        self._device = torch.device(device)
        self._module = _load_for_lite_interpreter(str(path), map_location=self._device)

    def forward(self, tensor: torch.Tensor) -> torch.Tensor:
        with torch.inference_mode():
            output = self._module.forward(tensor.to(self._device))
        # Some exports return (logits, ...) tuples
        if isinstance(output, (tuple, list)):
            output = output[0]
        if not isinstance(output, torch.Tensor):
            raise TypeError(f"Model returned {type(output).__name__}, expected a tensor")
        return output.cpu()


class OnnxModule:
    """ONNX export of the classifier running on ONNX Runtime."""

    def __init__(self, path: Path, device: str, intra_op_threads: int = 0) -> None:
        opts = SessionOptions()
        opts.intra_op_num_threads = intra_op_threads
        providers = ["CPUExecutionProvider"]
        if device == "cuda":
            providers.insert(0, "CUDAExecutionProvider")
        self._session = InferenceSession(str(path), sess_options=opts, providers=providers)
        self._input_name = self._session.get_inputs()[0].name

    def forward(self, tensor: torch.Tensor) -> torch.Tensor:
        feed = tensor.detach().cpu().numpy().astype(np.float32, copy=False)
        outputs = self._session.run(None, {self._input_name: feed})
        return torch.from_numpy(np.asarray(outputs[0]))


def resolve_runtime(path: Path, configured: str) -> ModelRuntime:
    """Pick the runtime for a model file; ``auto`` decides by file suffix."""
    if configured != "auto":
        return ModelRuntime(configured)
    if path.suffix.lower() == ".onnx":
        return ModelRuntime.ONNX
    return ModelRuntime.TORCHSCRIPT_LITE


def deserialize(path: Path, runtime: ModelRuntime, settings: Settings) -> InferenceModule:
    """Load the model file at ``path`` into an inference module."""
    if runtime is ModelRuntime.ONNX:
        return OnnxModule(path, settings.device, settings.intra_op_threads)
    return LiteInterpreterModule(path, settings.device)


@dataclass(frozen=True)
class ModelHandle:
    """A loaded model together with where it came from."""

    module: InferenceModule
    runtime: ModelRuntime
    url: str
    path: Path
    device: str


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------


@runtime_checkable
class ModelFetcher(Protocol):
    """Resolves a model URL to a local file path."""

    async def fetch(self, url: str) -> Path:
        """Make the artifact at ``url`` available locally and return its path."""
        ...


def _cache_path(models_dir: Path, url: str) -> Path:
    """Return ``models_dir/<url digest>/<file name>``; distinct URLs never share a file."""
    name = Path(urlparse(url).path).name
    if not name:
        raise ValueError(f"Cannot derive a file name from model URL: {url}")
    digest = hashlib.sha256(url.encode()).hexdigest()[:16]
    return models_dir / digest / name


class HttpModelFetcher:
    """Downloads model artifacts over HTTP(S) into a local cache directory."""

    def __init__(
        self,
        models_dir: str | Path,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._models_dir = Path(models_dir)
        self._timeout = timeout
        self._transport = transport

    async def fetch(self, url: str) -> Path:
        target = _cache_path(self._models_dir, url)
        if target.exists():
            logger.info("Using cached model %s", target)
            return target

        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")
        try:
            async with (
                httpx.AsyncClient(
                    timeout=self._timeout,
                    follow_redirects=True,
                    transport=self._transport,
                ) as client,
                client.stream("GET", url) as response,
            ):
                response.raise_for_status()
                with partial.open("wb") as fh:
                    async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                        fh.write(chunk)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        partial.replace(target)
        logger.info("Downloaded %s to %s", url, target)
        return target


def parse_hub_url(url: str) -> tuple[str, str]:
    """Split ``hf://<org>/<repo>/<file>`` into a repo id and a file name."""
    if not url.startswith(HF_SCHEME):
        raise ValueError(f"Not a Hugging Face Hub URL: {url}")
    parts = url[len(HF_SCHEME) :].split("/", 2)
    if len(parts) < 3 or not all(parts):
        raise ValueError(f"Expected hf://<org>/<repo>/<file>, got {url}")
    return f"{parts[0]}/{parts[1]}", parts[2]


class HubModelFetcher:
    """Downloads model artifacts from the Hugging Face Hub."""

    def __init__(self, models_dir: str | Path) -> None:
        self._models_dir = Path(models_dir)

    async def fetch(self, url: str) -> Path:
        repo_id, filename = parse_hub_url(url)
        downloaded = await asyncio.to_thread(
            hf_hub_download,
            repo_id=repo_id,
            filename=filename,
            local_dir=str(self._models_dir / repo_id),
        )
        logger.info("Downloaded %s to %s", url, downloaded)
        return Path(downloaded)


class CallableModelFetcher:
    """Adapts an ``async (url) -> path`` function to the fetcher protocol."""

    def __init__(self, func: Callable[[str], Awaitable[str | Path]]) -> None:
        self._func = func

    async def fetch(self, url: str) -> Path:
        return Path(await self._func(url))


def default_fetcher(settings: Settings, url: str) -> ModelFetcher:
    """Return the built-in fetcher for ``url``."""
    if url.startswith(HF_SCHEME):
        return HubModelFetcher(settings.models_dir)
    return HttpModelFetcher(settings.models_dir, timeout=settings.download_timeout)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class ModelLoader:
    """Loads the configured model once and keeps the resulting handle."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._handle: ModelHandle | None = None
        self._lock = asyncio.Lock()

    @property
    def handle(self) -> ModelHandle | None:
        """The loaded model, or None before the first successful load."""
        return self._handle

    def require_handle(self) -> ModelHandle:
        """Return the loaded model.

        Raises:
            ModelNotLoadedError: If ``load()`` has not completed successfully.
        """
        if self._handle is None:
            raise ModelNotLoadedError
        return self._handle

    async def load(
        self,
        fetcher: ModelFetcher | Callable[[str], Awaitable[str | Path]] | None = None,
    ) -> ModelHandle:
        """Fetch and deserialize the configured model unless already loaded.

        Args:
            fetcher: Strategy resolving the model URL to a local path. A plain
                async function is accepted too. Defaults to ``default_fetcher``.

        Returns:
            The loaded model handle. Repeated calls return the same handle
            without fetching again.

        Errors from the fetcher or the runtime propagate unchanged and leave
        the loader empty, so the call can be retried.
        """
        if self._handle is not None:
            return self._handle

        async with self._lock:
            # Another caller may have finished loading while we waited.
            if self._handle is not None:
                return self._handle

            url = self._settings.model_url
            path = await self._resolve_fetcher(fetcher, url).fetch(url)
            runtime = resolve_runtime(path, self._settings.model_runtime)
            module = await asyncio.to_thread(deserialize, path, runtime, self._settings)

            self._handle = ModelHandle(
                module=module,
                runtime=runtime,
                url=url,
                path=path,
                device=self._settings.device,
            )
            logger.info("Loaded %s model from %s", runtime, path)
            return self._handle

    def _resolve_fetcher(
        self,
        fetcher: ModelFetcher | Callable[[str], Awaitable[str | Path]] | None,
        url: str,
    ) -> ModelFetcher:
        if fetcher is None:
            return default_fetcher(self._settings, url)
        if isinstance(fetcher, ModelFetcher):
            return fetcher
        return CallableModelFetcher(fetcher)
