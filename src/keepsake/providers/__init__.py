"""Provider domain: classification and embedding adapters."""

from keepsake.providers.adapters import build_classification_provider
from keepsake.providers.adapters import build_embedding_provider
from keepsake.providers.adapters import NoopClassifier
from keepsake.providers.adapters import NoopEmbeddingProvider
from keepsake.providers.adapters import OllamaEmbeddingProvider
from keepsake.providers.adapters import OpenAICompatibleClassifier
from keepsake.providers.adapters import OpenAIEmbeddingProvider
from keepsake.providers.base import ClassificationError
from keepsake.providers.base import ClassificationProvider
from keepsake.providers.base import EmbeddingError
from keepsake.providers.base import EmbeddingProvider
from keepsake.providers.base import ProviderError
from keepsake.providers.capabilities import DEFAULT_CAPABILITIES
from keepsake.providers.capabilities import ProviderCapabilities
from keepsake.providers.capabilities import rejects_temperature

__all__ = [
    "ClassificationError",
    "ClassificationProvider",
    "DEFAULT_CAPABILITIES",
    "EmbeddingError",
    "EmbeddingProvider",
    "NoopClassifier",
    "NoopEmbeddingProvider",
    "OllamaEmbeddingProvider",
    "OpenAICompatibleClassifier",
    "OpenAIEmbeddingProvider",
    "ProviderCapabilities",
    "ProviderError",
    "build_classification_provider",
    "build_embedding_provider",
    "rejects_temperature",
]
