"""
Kidney Strip Analyzer - Core Analysis Pipeline
==================================================
Model loading, image preprocessing, inference and result interpretation
for urine test strip photos.

License: MIT
"""

import asyncio
import io
import logging
import os
import threading
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import onnxruntime as ort
from PIL import Image, UnidentifiedImageError
from torchvision import transforms

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION & CONSTANTS
# ============================================================================

@dataclass
class ModelConfig:
    """Model configuration parameters."""
    model_path: str = "model/kidney_strip_model.onnx"
    input_size: Tuple[int, int] = (224, 224)
    # Applied after the /255 scaling: (x - 127.5) / 127.5 == x / 127.5 - 1
    mean: List[float] = None
    std: List[float] = None
    providers: List[str] = field(default_factory=lambda: ['CPUExecutionProvider'])

    def __post_init__(self):
        if self.mean is None:
            self.mean = [127.5, 127.5, 127.5]
        if self.std is None:
            self.std = [127.5, 127.5, 127.5]


class Severity(str, Enum):
    NORMAL = "normal"
    HIGH_RISK = "high-risk"
    DANGER = "danger"


class StripColor(str, Enum):
    YELLOW = "yellow"
    ORANGE = "orange"
    GREEN = "green"


@dataclass(frozen=True)
class ClassProfile:
    """Clinical fields attached to one model output class."""
    severity: Severity
    color: StripColor
    ratio: str
    diagnosis: str
    recommendations: Tuple[str, ...]


# Indexed by model output class; order must match the trained model.
CLASS_PROFILES: Tuple[ClassProfile, ...] = (
    ClassProfile(
        severity=Severity.NORMAL,
        color=StripColor.YELLOW,
        ratio="Normal (< 30 mg/g)",
        diagnosis=(
            "Normal kidney function detected. Your albumin-creatinine ratio "
            "appears to be within healthy limits."
        ),
        recommendations=(
            "Continue maintaining a healthy lifestyle",
            "Stay hydrated with 8-10 glasses of water daily",
            "Maintain a balanced diet low in sodium",
            "Schedule regular check-ups with your healthcare provider",
            "Keep monitoring your kidney health annually",
        ),
    ),
    ClassProfile(
        severity=Severity.HIGH_RISK,
        color=StripColor.ORANGE,
        ratio="Elevated (30-300 mg/g)",
        diagnosis=(
            "Elevated albumin-creatinine ratio detected. This indicates potential "
            "kidney stress or early-stage kidney disease."
        ),
        recommendations=(
            "Consult with a nephrologist within 2-4 weeks",
            "Monitor blood pressure regularly",
            "Follow a kidney-friendly diet (low sodium, moderate protein)",
            "Increase water intake and maintain hydration",
            "Avoid NSAIDs and nephrotoxic medications",
            "Schedule follow-up tests in 3-6 months",
        ),
    ),
    ClassProfile(
        severity=Severity.DANGER,
        color=StripColor.GREEN,
        ratio="Critical (> 300 mg/g)",
        diagnosis=(
            "Critical albumin-creatinine ratio detected. This indicates significant "
            "kidney damage requiring immediate medical attention."
        ),
        recommendations=(
            "URGENT: Contact a nephrologist immediately",
            "Schedule comprehensive kidney function tests",
            "Monitor blood pressure and blood sugar closely",
            "Follow strict dietary restrictions as advised by doctor",
            "Consider medication adjustment with healthcare provider",
            "Prepare for possible dialysis or transplant evaluation",
        ),
    ),
)

FALLBACK_DIAGNOSIS = (
    "Model analysis failed. Please ensure the kidney analysis model is available "
    "and the photo is a valid JPG or PNG image."
)
FALLBACK_RECOMMENDATIONS = (
    "Check that the model file is in the model folder",
    "Retake or re-upload the test strip photo and try again",
    "Contact support if the issue persists",
)
FALLBACK_RATIO = "Unable to determine"

# ============================================================================
# ERRORS
# ============================================================================

class AnalysisError(Exception):
    """Base class for failures inside the analysis pipeline."""


class ModelLoadError(AnalysisError):
    """The model artifact is missing, corrupt or unreadable."""


class ImageDecodeError(AnalysisError):
    """The supplied bytes are not a decodable raster image."""


class InferenceError(AnalysisError):
    """The forward pass or output extraction failed."""

# ============================================================================
# RESULT TYPE
# ============================================================================

def _utc_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


@dataclass(frozen=True)
class AnalysisResult:
    """Outcome of a single strip analysis."""
    confidence: float
    diagnosis: str
    recommendations: Tuple[str, ...]
    severity: Severity
    color_detected: StripColor
    albumin_creatinine_ratio: str
    timestamp: str

    @property
    def is_fallback(self) -> bool:
        """True for the failure sentinel produced when analysis could not run."""
        return self.confidence == 0.0 and self.diagnosis == FALLBACK_DIAGNOSIS

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to the persisted JSON layout.

        Returns:
            Dictionary with camelCase keys, JSON serializable
        """
        return {
            'confidence': self.confidence,
            'diagnosis': self.diagnosis,
            'recommendations': list(self.recommendations),
            'severity': self.severity.value,
            'colorDetected': self.color_detected.value,
            'albuminCreatinineRatio': self.albumin_creatinine_ratio,
            'timestamp': self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        """Inverse of to_dict."""
        return cls(
            confidence=float(data['confidence']),
            diagnosis=data['diagnosis'],
            recommendations=tuple(data['recommendations']),
            severity=Severity(data['severity']),
            color_detected=StripColor(data['colorDetected']),
            albumin_creatinine_ratio=data['albuminCreatinineRatio'],
            timestamp=data['timestamp'],
        )

# ============================================================================
# MODEL MANAGEMENT
# ============================================================================

class ModelLoader:
    """Loads the ONNX model once and hands out the cached session."""

    def __init__(self, config: Optional[ModelConfig] = None):
        """
        Initialize model loader.

        Args:
            config: Model configuration object
        """
        self.config = config or ModelConfig()
        self._session: Optional[ort.InferenceSession] = None
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._session is not None

    def load(self) -> ort.InferenceSession:
        """
        Load ONNX model, or return the cached session.

        Returns:
            ONNX Runtime inference session

        Raises:
            ModelLoadError: if the artifact is missing or cannot be deserialized
        """
        session = self._session
        if session is not None:
            return session

        with self._lock:
            if self._session is not None:
                return self._session

            model_path = self.config.model_path
            if not os.path.exists(model_path):
                logger.error(f"Model file not found: {model_path}")
                raise ModelLoadError(
                    f"Failed to load kidney analysis model. "
                    f"Please ensure the model file exists at {model_path}"
                )

            logger.info(f"Loading model from {model_path}")
            try:
                session = ort.InferenceSession(
                    model_path,
                    providers=self.config.providers
                )
            except Exception as e:
                logger.error(f"Error loading model: {e}", exc_info=True)
                raise ModelLoadError(
                    f"Failed to load kidney analysis model from {model_path}: {e}"
                ) from e

            self._session = session
            logger.info("Model loaded successfully")
            return session

    async def aload(self) -> ort.InferenceSession:
        """Async variant of load; the fetch runs on a worker thread."""
        if self._session is not None:
            return self._session
        return await asyncio.to_thread(self.load)


_default_loader: Optional[ModelLoader] = None
_default_loader_lock = threading.Lock()


def get_model_loader(config: Optional[ModelConfig] = None) -> ModelLoader:
    """
    Return the process-wide model loader, creating it on first use.

    Args:
        config: Used only when the shared loader does not exist yet

    Returns:
        Shared ModelLoader instance
    """
    global _default_loader
    with _default_loader_lock:
        if _default_loader is None:
            _default_loader = ModelLoader(config)
        return _default_loader

# ============================================================================
# PREPROCESSING
# ============================================================================

def build_transform(config: ModelConfig) -> transforms.Compose:
    """Resize, scale to [0, 1], then normalize to [-1, 1]."""
    return transforms.Compose([
        transforms.Resize(config.input_size),
        transforms.ToTensor(),
        transforms.Normalize(config.mean, config.std)
    ])


def preprocess_image(image_bytes: bytes, config: Optional[ModelConfig] = None) -> np.ndarray:
    """
    Decode and preprocess an image for model input.

    Args:
        image_bytes: Raw JPEG/PNG bytes
        config: Model configuration object

    Returns:
        float32 array of shape (1, height, width, 3)

    Raises:
        ImageDecodeError: if the bytes cannot be decoded as an image
    """
    config = config or ModelConfig()
    transform = build_transform(config)

    try:
        with closing(Image.open(io.BytesIO(image_bytes))) as image:
            with closing(image.convert('RGB')) as rgb:
                tensor = transform(rgb)
    except (UnidentifiedImageError, Image.DecompressionBombError,
            OSError, ValueError, SyntaxError) as e:
        raise ImageDecodeError(f"Could not decode image: {e}") from e

    # CHW -> HWC, then add the batch axis
    return tensor.permute(1, 2, 0).unsqueeze(0).numpy().astype(np.float32)


def load_image_bytes(path: str) -> bytes:
    with open(path, 'rb') as f:
        return f.read()

# ============================================================================
# INFERENCE
# ============================================================================

def run_inference(session: ort.InferenceSession, tensor: np.ndarray) -> List[float]:
    """
    Run one forward pass and extract the output vector.

    Args:
        session: Loaded inference session
        tensor: Preprocessed input of shape (1, H, W, 3)

    Returns:
        Raw per-class outputs as floats

    Raises:
        InferenceError: if the forward pass or extraction fails
    """
    outputs = None
    try:
        start_time = datetime.now()
        input_name = session.get_inputs()[0].name
        outputs = session.run(None, {input_name: tensor})
        values = np.asarray(outputs[0], dtype=np.float64).reshape(-1).tolist()
        inference_time = (datetime.now() - start_time).total_seconds()
        logger.info(f"Inference complete in {inference_time*1000:.2f}ms")
        return values
    except Exception as e:
        logger.error(f"Error during inference: {e}", exc_info=True)
        raise InferenceError(f"Inference failed: {e}") from e
    finally:
        # ORT output buffers are reference counted; they are freed once this
        # name and the caller's copy of the values go out of scope
        del outputs


async def infer(session: ort.InferenceSession, tensor: np.ndarray) -> List[float]:
    """Run inference on a worker thread without blocking the event loop."""
    return await asyncio.to_thread(run_inference, session, tensor)

# ============================================================================
# INTERPRETATION
# ============================================================================

def argmax_first(values: Sequence[float]) -> Tuple[int, float]:
    """
    Index and value of the largest element; the first maximum wins.

    An empty sequence yields (0, 0.0).
    """
    if len(values) == 0:
        return 0, 0.0

    max_index = 0
    max_value = values[0]
    for i in range(1, len(values)):
        if values[i] > max_value:
            max_value = values[i]
            max_index = i
    return max_index, float(max_value)


def interpret_prediction(
    raw_output: Sequence[float],
    now: Optional[datetime] = None
) -> AnalysisResult:
    """
    Map the raw model output to a structured result.

    Args:
        raw_output: Per-class model outputs
        now: Clock override, defaults to the current UTC time

    Returns:
        AnalysisResult for the highest scoring class
    """
    max_index, max_confidence = argmax_first(raw_output)

    if 0 <= max_index < len(CLASS_PROFILES):
        profile = CLASS_PROFILES[max_index]
    else:
        logger.warning(f"Class index {max_index} outside known classes, using class 0")
        profile = CLASS_PROFILES[0]

    return AnalysisResult(
        confidence=max_confidence,
        diagnosis=profile.diagnosis,
        recommendations=profile.recommendations,
        severity=profile.severity,
        color_detected=profile.color,
        albumin_creatinine_ratio=profile.ratio,
        timestamp=_utc_timestamp(now)
    )


def fallback_result(now: Optional[datetime] = None) -> AnalysisResult:
    """Failure sentinel returned when an analysis cannot complete."""
    return AnalysisResult(
        confidence=0.0,
        diagnosis=FALLBACK_DIAGNOSIS,
        recommendations=FALLBACK_RECOMMENDATIONS,
        severity=Severity.NORMAL,
        color_detected=StripColor.YELLOW,
        albumin_creatinine_ratio=FALLBACK_RATIO,
        timestamp=_utc_timestamp(now)
    )

# ============================================================================
# PIPELINE
# ============================================================================

async def analyze_image(
    image_bytes: bytes,
    loader: Optional[ModelLoader] = None
) -> AnalysisResult:
    """
    Analyze a test strip photo end to end.

    Never raises: any failure is logged and turned into the fallback
    result, recognisable by confidence == 0.0. Saving to history is left
    to the caller.

    Args:
        image_bytes: Raw JPEG/PNG bytes
        loader: Model loader, defaults to the process-wide one

    Returns:
        AnalysisResult for the image
    """
    loader = loader or get_model_loader()
    try:
        tensor = await asyncio.to_thread(preprocess_image, image_bytes, loader.config)
        session = await loader.aload()
        raw_output = await infer(session, tensor)
        del tensor
        result = interpret_prediction(raw_output)
    except AnalysisError as e:
        logger.error(f"Analysis failed: {e}")
        return fallback_result()
    except Exception as e:
        logger.error(f"Unexpected error during analysis: {e}", exc_info=True)
        return fallback_result()

    logger.info(
        f"Prediction results: confidence={result.confidence:.4f}, "
        f"color={result.color_detected.value}, severity={result.severity.value}"
    )
    return result


def analyze_image_sync(
    image_bytes: bytes,
    loader: Optional[ModelLoader] = None
) -> AnalysisResult:
    """Blocking wrapper around analyze_image for synchronous callers."""
    return asyncio.run(analyze_image(image_bytes, loader))
