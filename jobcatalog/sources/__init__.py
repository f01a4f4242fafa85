from jobcatalog.config import PipelineConfig, SourceConfig
from jobcatalog.errors import SourceNotFoundError

from .base import BaseSource
from .greenhouse import GreenhouseSource

# Map source type strings to classes
SOURCE_REGISTRY: dict[str, type[BaseSource]] = {
    "greenhouse": GreenhouseSource,
}


def build_source(source_config: SourceConfig, pipeline_config: PipelineConfig) -> BaseSource:
    """Instantiate the fetcher for a configured source."""
    source_cls = SOURCE_REGISTRY.get(source_config.source_type)
    if source_cls is None:
        raise SourceNotFoundError(
            source_config.name, f"unknown source type {source_config.source_type!r}"
        )
    return source_cls(source_config, pipeline_config)


__all__ = [
    "BaseSource",
    "GreenhouseSource",
    "SOURCE_REGISTRY",
    "build_source",
]
