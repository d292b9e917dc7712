"""Diffusion pipeline lifecycle management for the local image backend.

This module provides :class:`ModelManager`, the single point of control for
loading and invoking a HuggingFace diffusers pipeline when wallpapers are
generated on the local GPU instead of through a hosted API.

Key Responsibilities
--------------------
- **Lazy model loading**: ``torch`` and ``diffusers`` are imported and the
  pipeline is loaded on the first generation, so the package imports without
  the optional ``local`` extra installed.
- **Turbo-model enforcement**: models whose HuggingFace ID contains
  ``"turbo"`` (case-insensitive) have their ``guidance_scale`` forced to 0.0.
- **Performance optimisation**: attention slicing, sequential CPU offloading,
  and ``torch.compile`` can all be enabled via :class:`WallpapyConfig`.
- **CUDA memory management**: on unload, the pipeline reference is deleted,
  garbage-collected, and ``torch.cuda.empty_cache()`` is called.

Usage
-----
::

    from wallpapy.core.config import config
    from wallpapy.core.model_manager import ModelManager

    mgr = ModelManager(config)
    mgr.load_model(config.local_model_id)
    image = mgr.generate(prompt="a misty fjord at dawn", seed=42)
    mgr.unload()
"""

from __future__ import annotations

import gc
import logging
import random
import threading

from PIL import Image

from wallpapy.core.config import WallpapyConfig

logger = logging.getLogger(__name__)

# Dtype string → torch dtype mapping, built on first use so torch is only
# imported when the local backend actually runs.
_DTYPE_MAP: dict | None = None


def _get_dtype_map() -> dict:
    """Return the dtype string → ``torch.dtype`` mapping."""
    global _DTYPE_MAP
    if _DTYPE_MAP is None:
        import torch

        _DTYPE_MAP = {
            "bfloat16": torch.bfloat16,
            "float16": torch.float16,
            "float32": torch.float32,
        }
    return _DTYPE_MAP


class ModelManager:
    """Manages the lifecycle of a single diffusers pipeline.

    Attributes:
        _config (WallpapyConfig):
            Application configuration: device, dtype, paths, and
            performance flags.
        _pipeline:
            The currently loaded diffusers pipeline, or ``None``.
        _current_model_id (str | None):
            HuggingFace identifier of the loaded model, or ``None``.
    """

    def __init__(self, config: WallpapyConfig) -> None:
        self._config = config
        self._pipeline = None
        self._current_model_id: str | None = None
        # Generation stages can outlive their timeout on a worker thread;
        # the lock keeps a late call from overlapping the next one.
        self._lock = threading.Lock()

    def load_model(self, hf_id: str) -> None:
        """Load a diffusers pipeline by HuggingFace model identifier.

        If the requested model is already loaded this method is a no-op.
        If a *different* model is loaded it is unloaded first.

        Args:
            hf_id: HuggingFace model identifier, e.g.
                ``"Tongyi-MAI/Z-Image-Turbo"``.

        Raises:
            RuntimeError: If the model cannot be loaded (network error, out
                of memory, incompatible model format, etc.).
        """
        if self._current_model_id == hf_id and self._pipeline is not None:
            logger.info("Model '%s' is already loaded, skipping.", hf_id)
            return

        if self._pipeline is not None:
            logger.info(
                "Switching from '%s' to '%s'; unloading current model.",
                self._current_model_id,
                hf_id,
            )
            self.unload()

        import torch
        from diffusers import AutoPipelineForText2Image

        torch_dtype = _get_dtype_map().get(self._config.torch_dtype, torch.bfloat16)

        logger.info(
            "Loading model '%s' (dtype=%s, device=%s, cache=%s).",
            hf_id,
            self._config.torch_dtype,
            self._config.device,
            self._config.models_dir,
        )

        try:
            pipeline = AutoPipelineForText2Image.from_pretrained(
                hf_id,
                torch_dtype=torch_dtype,
                cache_dir=str(self._config.models_dir),
            )

            if self._config.enable_model_cpu_offload:
                pipeline.enable_sequential_cpu_offload()
                logger.info("Sequential CPU offloading enabled.")
            else:
                pipeline = pipeline.to(self._config.device)

            if self._config.enable_attention_slicing:
                pipeline.enable_attention_slicing()
                logger.info("Attention slicing enabled.")

            if self._config.compile_model:
                pipeline.unet = torch.compile(
                    pipeline.unet,
                    mode="reduce-overhead",
                    fullgraph=True,
                )
                logger.info("Model compiled with torch.compile.")

            self._pipeline = pipeline
            self._current_model_id = hf_id
            logger.info("Model '%s' loaded successfully.", hf_id)

        except Exception:
            # Leave a clean state so the next run does not use a half-loaded pipeline
            self._pipeline = None
            self._current_model_id = None
            logger.exception("Failed to load model '%s'.", hf_id)
            raise

    def generate(self, prompt: str, seed: int | None = None) -> Image.Image:
        """Generate one wallpaper image, loading the configured model if needed.

        Width, height, steps and guidance come from the configuration; a
        random seed is drawn when none is given.

        Args:
            prompt: Text prompt describing the desired image.
            seed: Optional seed for reproducible output.

        Returns:
            A PIL :class:`~PIL.Image.Image` of the generated result.
        """
        with self._lock:
            if self._pipeline is None:
                self.load_model(self._config.local_model_id)

            import torch

            guidance_scale = self._config.guidance_scale
            if self._current_model_id and "turbo" in self._current_model_id.lower():
                if guidance_scale != 0.0:
                    logger.warning(
                        "Turbo model detected ('%s'); forcing guidance_scale from %.1f to 0.0.",
                        self._current_model_id,
                        guidance_scale,
                    )
                    guidance_scale = 0.0

            if seed is None:
                seed = random.randint(0, 2**32 - 1)
            generator = torch.Generator(device=self._config.device).manual_seed(seed)

            logger.info(
                "Generating image: %dx%d, %d steps, guidance=%.1f, seed=%d.",
                self._config.local_width,
                self._config.local_height,
                self._config.num_inference_steps,
                guidance_scale,
                seed,
            )

            output = self._pipeline(
                prompt=prompt,
                width=self._config.local_width,
                height=self._config.local_height,
                num_inference_steps=self._config.num_inference_steps,
                guidance_scale=guidance_scale,
                generator=generator,
            )

        image: Image.Image = output.images[0]
        logger.info("Image generated successfully (seed=%d).", seed)
        return image

    def unload(self) -> None:
        """Unload the current model and free GPU memory.

        This method is safe to call when no model is loaded (no-op).
        """
        if self._pipeline is None:
            return

        model_id = self._current_model_id
        logger.info("Unloading model '%s'.", model_id)

        del self._pipeline
        self._pipeline = None
        self._current_model_id = None

        gc.collect()

        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
                torch.cuda.synchronize()
                logger.info("CUDA cache cleared after unloading '%s'.", model_id)
        except ImportError:
            # torch not installed, nothing to clean up.
            pass

    @property
    def is_loaded(self) -> bool:
        """Whether a model pipeline is currently loaded in memory."""
        return self._pipeline is not None

    @property
    def current_model_id(self) -> str | None:
        """HuggingFace ID of the currently loaded model, or ``None``."""
        return self._current_model_id
