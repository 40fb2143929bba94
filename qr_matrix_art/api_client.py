"""Clients for the generative-image boundary.

Every client makes exactly one call per ``generate`` and either returns a
path to an image file or raises ``GenerationServiceError``. Retrying is the
caller's job (see ``qr_matrix_art.generation``).
"""

import logging
import os
import random
import sys
import tempfile
import threading
import time
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
from PIL import Image, ImageDraw

from qr_matrix_art import TARGET_SIZE
from qr_matrix_art.errors import GenerationServiceError

logger = logging.getLogger(__name__)

BACKEND_ENV_VAR = "QR_MATRIX_ART_BACKEND"
DEFAULT_BACKEND = "huggingface"
DEFAULT_TIMEOUT_SECONDS = 300  # 5 minutes


# ---------------------------------------------------------------------------
# Spinner for visual feedback during long API calls
# ---------------------------------------------------------------------------

class Spinner:
    """Simple terminal spinner for long-running operations."""

    FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]

    def __init__(self, message: str = "Generating..."):
        self._message = message
        self._running = False
        self._thread: threading.Thread | None = None

    def start(self) -> "Spinner":
        self._running = True
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()
        return self

    def stop(self, final_message: str = "") -> None:
        self._running = False
        if self._thread:
            self._thread.join()
        sys.stderr.write("\r\033[K")
        if final_message:
            sys.stderr.write(f"  {final_message}\n")
        sys.stderr.flush()

    def _spin(self) -> None:
        idx = 0
        while self._running:
            frame = self.FRAMES[idx % len(self.FRAMES)]
            start = time.time()
            while self._running and time.time() - start < 0.1:
                time.sleep(0.05)
            sys.stderr.write(f"\r  {frame} {self._message}")
            sys.stderr.flush()
            idx += 1


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

@dataclass
class GenerationRequest:
    """Parameters for one generation call."""

    prompt: str
    control_image_path: str
    negative_prompt: str = "ugly, disfigured, low quality, blurry, nsfw"
    size: int = TARGET_SIZE
    controlnet_scale: float = 1.1
    guidance_scale: float = 7.5
    strength: float = 0.9
    seed: int = -1
    sampler: str = "DPM++ Karras SDE"
    control_guidance_start: float = 0.0
    control_guidance_end: float = 1.0
    num_steps: int = 30

    def __post_init__(self):
        if not self.prompt.strip():
            raise ValueError("prompt cannot be empty")
        if self.size <= 0:
            raise ValueError(f"size must be positive, got {self.size}")
        if not 0.0 <= self.control_guidance_start <= self.control_guidance_end <= 1.0:
            raise ValueError("control guidance window must satisfy 0 <= start <= end <= 1")


# ---------------------------------------------------------------------------
# Timeout helper
# ---------------------------------------------------------------------------

def call_with_timeout(fn, backend: str, timeout: float = DEFAULT_TIMEOUT_SECONDS, progress: str | None = None):
    """Run ``fn()`` once in a worker thread, giving up after ``timeout`` seconds.

    Any exception from ``fn`` and the timeout itself surface as
    ``GenerationServiceError``. When ``progress`` is given a spinner shows
    that message while waiting.
    """
    spinner = Spinner(progress).start() if progress else None

    result_container = [None]
    error_container = [None]

    def _run():
        try:
            result_container[0] = fn()
        except Exception as e:  # re-raised below in the caller's thread
            error_container[0] = e

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    thread.join(timeout=timeout)

    if spinner:
        spinner.stop()

    if thread.is_alive():
        raise GenerationServiceError(
            f"API call timed out after {timeout}s. "
            "The space may be cold-starting or overloaded.",
            backend=backend,
        )
    if error_container[0] is not None:
        error = error_container[0]
        if isinstance(error, GenerationServiceError):
            raise error
        raise GenerationServiceError(f"{backend} call failed: {error}", backend=backend) from error
    return result_container[0]


def _as_image_path(result, backend: str) -> str:
    """Pull a file path out of a Gradio-style result and check it exists."""
    if isinstance(result, (list, tuple)):
        result = result[0] if result else None
    if isinstance(result, dict):
        result = result.get("path") or result.get("name")
    if not isinstance(result, (str, os.PathLike)) or not os.path.isfile(result):
        raise GenerationServiceError(f"{backend} returned no image file: {result!r}", backend=backend)
    return str(result)


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------

class BaseAPIClient(ABC):
    """Abstract base class for generation backends."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS, show_progress: bool = False):
        self.timeout = timeout
        self.show_progress = show_progress

    @abstractmethod
    def generate(self, request: GenerationRequest) -> str:
        """Make one generation call.

        Args:
            request: Generation parameters.

        Returns:
            Path to the generated image file.

        Raises:
            GenerationServiceError: On failure, timeout, or malformed output.
        """
        ...

    @abstractmethod
    def name(self) -> str:
        ...

    def _call(self, fn):
        progress = f"Generating via {self.name()}..." if self.show_progress else None
        return call_with_timeout(fn, self.name(), timeout=self.timeout, progress=progress)


def _connect_gradio(space_id: str):
    try:
        from gradio_client import Client
        return Client(space_id)
    except Exception as e:
        raise GenerationServiceError(
            f"Failed to connect to HuggingFace space '{space_id}': {e}\n"
            "Make sure you have internet access and gradio_client installed.",
            backend=space_id,
        ) from e


# ---------------------------------------------------------------------------
# HuggingFace client
# ---------------------------------------------------------------------------

class HuggingFaceClient(BaseAPIClient):
    """Client for the HuggingFace QR-code-AI-art-generator space.

    Uses the Gradio client to call the public space. No API key required.
    ControlNet: DionTimmer/controlnet_qrcode-control_v1p_sd15
    """

    SPACE_ID = "huggingface-projects/QR-code-AI-art-generator"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._client = _connect_gradio(self.SPACE_ID)

    def name(self) -> str:
        return "huggingface"

    def generate(self, request: GenerationRequest) -> str:
        from gradio_client import handle_file

        def _call():
            return self._client.predict(
                # Empty content: the space must use our control image as-is
                qr_code_content="",
                prompt=request.prompt,
                negative_prompt=request.negative_prompt,
                guidance_scale=request.guidance_scale,
                controlnet_conditioning_scale=request.controlnet_scale,
                strength=request.strength,
                seed=request.seed,
                init_image=None,
                qrcode_image=handle_file(request.control_image_path),
                use_qr_code_as_init_image=True,
                sampler=request.sampler,
                api_name="/inference",
            )

        return _as_image_path(self._call(_call), self.name())


# ---------------------------------------------------------------------------
# IllusionDiffusion client
# ---------------------------------------------------------------------------

class IllusionDiffusionClient(BaseAPIClient):
    """Client for the AP123/IllusionDiffusion space (1024x1024 output).

    ControlNet: monster-labs/control_v1p_sd15_qrcode_monster
    """

    SPACE_ID = "AP123/IllusionDiffusion"
    SAMPLERS = ("Euler", "DPM++ Karras SDE")

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._client = _connect_gradio(self.SPACE_ID)

    def name(self) -> str:
        return "illusion"

    def generate(self, request: GenerationRequest) -> str:
        from gradio_client import handle_file

        def _call():
            return self._client.predict(
                control_image=handle_file(request.control_image_path),
                prompt=request.prompt,
                negative_prompt=request.negative_prompt,
                guidance_scale=request.guidance_scale,
                controlnet_conditioning_scale=request.controlnet_scale,
                control_guidance_start=request.control_guidance_start,
                control_guidance_end=request.control_guidance_end,
                upscaler_strength=request.strength,
                seed=request.seed,
                sampler=request.sampler if request.sampler in self.SAMPLERS else "Euler",
                api_name="/inference",
            )

        # Returns (image_path, visibility_dict, seed)
        return _as_image_path(self._call(_call), self.name())


# ---------------------------------------------------------------------------
# Replicate client
# ---------------------------------------------------------------------------

class ReplicateClient(BaseAPIClient):
    """Client for Replicate API. Requires REPLICATE_API_TOKEN env var."""

    MODEL = "qr2ai/qr_code_ai_art_generator"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if not os.environ.get("REPLICATE_API_TOKEN"):
            raise ValueError(
                "REPLICATE_API_TOKEN environment variable not set.\n"
                "Get your token at https://replicate.com/account/api-tokens"
            )
        import replicate
        self._replicate = replicate

    def name(self) -> str:
        return "replicate"

    def generate(self, request: GenerationRequest) -> str:
        def _call():
            with open(request.control_image_path, "rb") as control:
                output = self._replicate.run(
                    self.MODEL,
                    input={
                        "qr_code_image": control,
                        "prompt": request.prompt,
                        "negative_prompt": request.negative_prompt,
                        "guidance_scale": request.guidance_scale,
                        "controlnet_conditioning_scale": request.controlnet_scale,
                        "strength": request.strength,
                        "seed": request.seed if request.seed >= 0 else None,
                        "num_inference_steps": request.num_steps,
                    },
                )
            # Replicate returns a URL or list of URLs
            url = output[0] if isinstance(output, list) else output
            tmp = tempfile.NamedTemporaryFile(suffix=".png", prefix="qr_matrix_art_replicate_", delete=False)
            tmp.close()
            urllib.request.urlretrieve(str(url), tmp.name)
            return tmp.name

        return _as_image_path(self._call(_call), self.name())


# ---------------------------------------------------------------------------
# Local client
# ---------------------------------------------------------------------------

class LocalClient(BaseAPIClient):
    """Offline backend: a seeded gradient with the control image laid over it.

    Output depends only on the request, so the same seed always gives the
    same image. ``controlnet_scale`` sets how strongly the control image
    shows through, which lets the retry loop's adjustments take effect.
    """

    ACCENTS = 24

    def __init__(self, output_dir: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.output_dir = output_dir

    def name(self) -> str:
        return "local"

    def _render(self, request: GenerationRequest) -> Image.Image:
        rng = random.Random(request.seed if request.seed >= 0 else 0)
        size = request.size

        top = np.array([rng.randint(120, 220) for _ in range(3)], dtype=np.float64)
        bottom = np.array([rng.randint(40, 140) for _ in range(3)], dtype=np.float64)
        ramp = np.linspace(0.0, 1.0, size)[:, None, None]
        gradient = top + (bottom - top) * ramp
        base = np.broadcast_to(gradient, (size, size, 3))

        control = Image.open(request.control_image_path).convert("RGB").resize((size, size), Image.LANCZOS)
        weight = min(max(0.6 * request.controlnet_scale, 0.0), 1.0)
        mixed = base * (1 - weight) + np.asarray(control, dtype=np.float64) * weight
        image = Image.fromarray(np.clip(np.round(mixed), 0, 255).astype(np.uint8))

        # Small translucent accents stand in for generated detail
        overlay = Image.new("RGBA", image.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        for _ in range(self.ACCENTS):
            r = rng.randint(2, max(3, size // 64))
            x, y = rng.randrange(size), rng.randrange(size)
            color = tuple(rng.randint(0, 255) for _ in range(3)) + (int(80 * request.strength),)
            draw.ellipse((x - r, y - r, x + r, y + r), fill=color)
        return Image.alpha_composite(image.convert("RGBA"), overlay).convert("RGB")

    def generate(self, request: GenerationRequest) -> str:
        def _call():
            image = self._render(request)
            tmp = tempfile.NamedTemporaryFile(
                suffix=".png", prefix="qr_matrix_art_local_", dir=self.output_dir, delete=False,
            )
            image.save(tmp, format="PNG")
            tmp.close()
            return tmp.name

        path = self._call(_call)
        logger.debug("Local backend wrote %s (seed %d)", path, request.seed)
        return _as_image_path(path, self.name())


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

CLIENTS = {
    "huggingface": HuggingFaceClient,
    "illusion": IllusionDiffusionClient,
    "replicate": ReplicateClient,
    "local": LocalClient,
}


def get_client(name: str | None = None, **kwargs) -> BaseAPIClient:
    """Factory for generation backends.

    Args:
        name: One of "huggingface", "illusion", "replicate" or "local".
            Defaults to ``$QR_MATRIX_ART_BACKEND``, then "huggingface".

    Returns:
        An initialized API client.
    """
    name = name or os.environ.get(BACKEND_ENV_VAR) or DEFAULT_BACKEND
    if name not in CLIENTS:
        raise ValueError(f"Unknown API '{name}'. Choose from: {', '.join(CLIENTS.keys())}")
    logger.debug("Using %s backend", name)
    return CLIENTS[name](**kwargs)
