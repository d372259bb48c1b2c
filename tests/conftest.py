"""
Pytest configuration and fixtures for the ghost-mannequin pipeline tests.
"""

import asyncio
import io
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pytest
from PIL import Image

from ghoststudio.collaborators.base import RenderResult
from ghoststudio.collaborators.blob_store import InMemoryBlobStore
from ghoststudio.config import PipelineConfig, StageSettings


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_image():
    """Create a sample flat-lay shirt on a light gray background."""
    img = Image.new('RGB', (512, 512), color=(235, 235, 235))
    pixels = np.array(img)

    # Body and sleeves
    pixels[106:406, 156:356] = [46, 91, 186]
    pixels[106:256, 56:156] = [46, 91, 186]
    pixels[106:256, 356:456] = [46, 91, 186]

    return Image.fromarray(pixels)


@pytest.fixture
def sample_image_bytes(sample_image):
    return image_bytes(sample_image)


@pytest.fixture
def sample_analysis() -> Dict[str, Any]:
    """Analysis document with one critical brand label and a neckline hollow."""
    return {
        "meta": {"schema_version": "4.1", "session_id": "test"},
        "labels_found": [
            {
                "type": "brand",
                "location": "neck",
                "bbox_norm": [0.45, 0.05, 0.55, 0.1],
                "text": "EAT",
                "ocr_conf": 0.95,
                "readable": True,
                "preserve": True,
                "priority": "critical",
            },
            {
                "type": "care",
                "location": "side seam",
                "text": "Machine wash cold",
                "ocr_conf": 0.6,
                "preserve": True,
                "priority": "normal",
            },
        ],
        "preserve_details": [
            {"element": "chest pocket", "priority": "critical", "location": "left chest"},
        ],
        "hollow_regions": [
            {"region_type": "neckline", "keep_hollow": True, "inner_visible": True,
             "inner_description": "navy interior"},
        ],
        "interior_analysis": [],
        "construction_details": [
            {"feature": "collar", "silhouette_rule": "stand upright", "critical_for_structure": True},
        ],
        "special_handling": None,
    }


@pytest.fixture
def sample_enrichment() -> Dict[str, Any]:
    return {
        "meta": {"schema_version": "4.3", "session_id": "test_enrichment"},
        "color_precision": {
            "primary_hex": "#2E5BBA",
            "secondary_hex": "#F2F2F2",
            "pattern_direction": "solid",
            "pattern_repeat_size": "none",
            "pattern_hexes": ["#2E5BBA", "blue", "#2E5BBA", "#FFFFFF"],
        },
        "fabric_behavior": {
            "drape_quality": "structured",
            "surface_sheen": "matte",
            "transparency_level": "opaque",
        },
        "construction_precision": {"edge_finishing": "double-needle hem"},
        "rendering_guidance": {"shadow_behavior": "soft contact"},
        "confidence_breakdown": {"color_confidence": 0.92},
    }


@pytest.fixture
def memory_store():
    return InMemoryBlobStore()


@pytest.fixture
def fast_config():
    """Default config with short timeouts so timeout tests finish quickly."""
    config = PipelineConfig()
    config.stages = {key: StageSettings(timeout_ms=200) for key in config.stages}
    config.stages["rendering"] = StageSettings(timeout_ms=200, max_retries=1)
    return config


@pytest.fixture(autouse=True)
def setup_test_environment():
    """Setup test environment variables."""
    original_env = os.environ.copy()

    os.environ['TESTING'] = '1'
    os.environ['GOOGLE_API_KEY'] = 'test-api-key'

    yield

    os.environ.clear()
    os.environ.update(original_env)


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeAnalyzer:
    def __init__(self, document=None, delay: float = 0.0, error: Optional[Exception] = None):
        self.document = document
        self.delay = delay
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def analyze(self, image_ref, session_id, on_model_ref=None):
        self.calls.append({"image_ref": image_ref, "session_id": session_id, "on_model_ref": on_model_ref})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.document


class FakeEnricher:
    def __init__(self, document=None, delay: float = 0.0, error: Optional[Exception] = None):
        self.document = document
        self.delay = delay
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def enrich(self, image_ref, session_id, analysis):
        self.calls.append({"image_ref": image_ref, "session_id": session_id, "analysis": analysis})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.document


class FakeRefiner:
    def __init__(self, payload=None, error: Optional[Exception] = None):
        self.payload = payload
        self.error = error
        self.calls = 0

    async def merge(self, analysis, enrichment):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.payload


class FakeBackgroundRemover:
    def __init__(self, store, error: Optional[Exception] = None):
        self.store = store
        self.error = error
        self.calls = 0

    async def remove(self, image_ref, session_id):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.store.put(self.store.get(image_ref), session_id, name="cleaned", mime_type="image/png")


class FakeRenderer:
    """Returns queued RenderResults in order, repeating the last one."""

    def __init__(self, results: Optional[List[RenderResult]] = None, error: Optional[Exception] = None):
        self.results = results or [good_render()]
        self.error = error
        self.instructions: List[str] = []

    @property
    def calls(self) -> int:
        return len(self.instructions)

    async def render(self, image_ref, facts, control, instruction, on_model_ref=None):
        self.instructions.append(instruction)
        if self.error is not None:
            raise self.error
        index = min(len(self.instructions), len(self.results)) - 1
        return self.results[index]


# Helper functions for tests
def image_bytes(image: Image.Image, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


def create_test_image(width=512, height=512, color=(128, 128, 128)):
    """Create a test image with specified dimensions and color."""
    return Image.new('RGB', (width, height), color=color)


def good_render(labels=("EAT",), background_hex="#FFFFFF", detected=()) -> RenderResult:
    return RenderResult(
        image_bytes=image_bytes(create_test_image(64, 64, (255, 255, 255))),
        mime_type="image/png",
        metadata={
            "background_hex": background_hex,
            "width": 2048,
            "height": 2048,
            "label_legibility": {text: 0.95 for text in labels},
            "detected_elements": list(detected),
        },
    )
