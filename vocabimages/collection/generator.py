"""Fallback image generation boundary."""

from dataclasses import dataclass, field
from typing import Optional, Protocol


@dataclass
class GeneratedImage:
    data: bytes
    prompt: str
    provider: str
    id: str
    cost: float = 0.0


@dataclass
class GenerationResult:
    images: list[GeneratedImage] = field(default_factory=list)
    approved_count: int = 0
    rejected_count: int = 0
    cost: float = 0.0


class ImageGenerator(Protocol):
    """Produces synthetic images when search comes up short."""

    @property
    def available(self) -> bool:
        """Return True if a provider is configured."""
        ...

    def generate(self, item_name: str, category: str, count: int, style: Optional[str] = None) -> GenerationResult:
        """Generate up to ``count`` images of the item."""
        ...


class DisabledImageGenerator:
    """Generator used when no provider is configured; always yields nothing."""

    available = False

    def generate(self, item_name: str, category: str, count: int, style: Optional[str] = None) -> GenerationResult:
        return GenerationResult()

