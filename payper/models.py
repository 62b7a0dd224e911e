"""Catalog of generation models offered for sale."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from payper.config import get_model_prices
from payper.errors import UnknownModel
from payper.schemas import MediaType, ProviderId


@dataclass(frozen=True)
class ModelInfo:
    """A sellable generation model."""
    id: str
    name: str
    provider_id: ProviderId
    vendor: str
    description: str
    media_type: MediaType
    price_usd: Decimal


_CATALOG = (
    ("gpt-image-1", "4o Image", ProviderId.GPT4O_IMAGE, "OpenAI",
     "High quality images with excellent prompt understanding", MediaType.IMAGE),
    ("ideogram", "Ideogram V3", ProviderId.IDEOGRAM, "Ideogram",
     "Creative images with diverse art styles and text rendering", MediaType.IMAGE),
    ("qwen", "Qwen", ProviderId.QWEN, "Alibaba Cloud",
     "High-quality images with flexible control and fast generation", MediaType.IMAGE),
    ("sora-2", "Sora 2", ProviderId.SORA, "OpenAI",
     "Professional quality videos with realistic motion", MediaType.VIDEO),
    ("veo-3.1", "Veo 3.1", ProviderId.VEO, "Google",
     "High-quality videos with text or image input support", MediaType.VIDEO),
)


def list_models(media_type: Optional[MediaType] = None) -> List[ModelInfo]:
    """Return the catalog with current prices, optionally filtered by media type."""
    prices: Dict[str, Decimal] = get_model_prices()
    models = [
        ModelInfo(
            id=model_id,
            name=name,
            provider_id=provider_id,
            vendor=vendor,
            description=description,
            media_type=kind,
            price_usd=prices[model_id],
        )
        for model_id, name, provider_id, vendor, description, kind in _CATALOG
    ]
    if media_type is not None:
        models = [m for m in models if m.media_type == media_type]
    return models


def get_model(model_id: str) -> ModelInfo:
    """Look up a model by id, raising UnknownModel if absent."""
    for model in list_models():
        if model.id == model_id:
            return model
    raise UnknownModel(model_id)
