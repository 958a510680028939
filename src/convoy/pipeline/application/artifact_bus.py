"""
Artifact Bus.

Key → value store through which later stages consume outputs (image
references, report file paths) produced by earlier ones. Values are plain
strings; the bus transports file paths and never parses report contents.
"""

import json
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Union

from convoy.pipeline.domain.exceptions import ArtifactUnavailable
from convoy.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ArtifactBus:
    """
    Per-run artifact store.

    A later put() with an existing key overwrites it. The engine runs on a
    single event loop and dependents are scheduled only after a stage's
    publish() returns, so every write is visible to them.
    """

    def __init__(self) -> None:
        self._values: Dict[str, str] = {}
        self._producers: Dict[str, str] = {}

    def put(self, key: str, value: str, producer: Optional[str] = None) -> None:
        if key in self._values and self._values[key] != value:
            logger.debug("artifact_overwritten", key=key, producer=producer, previous=self._producers.get(key))
        self._values[key] = str(value)
        if producer is not None:
            self._producers[key] = producer
        else:
            self._producers.pop(key, None)

    def get(self, key: str) -> str:
        """
        Raises:
            ArtifactUnavailable: If no stage has published key
        """
        try:
            return self._values[key]
        except KeyError:
            raise ArtifactUnavailable(key) from None

    def publish(self, artifacts: Mapping[str, str], producer: str) -> None:
        """Commit all outputs of a succeeded stage."""
        for key, value in artifacts.items():
            self.put(key, value, producer=producer)
        if artifacts:
            logger.info("artifacts_published", stage_id=producer, keys=sorted(artifacts))

    def producer_of(self, key: str) -> Optional[str]:
        return self._producers.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def snapshot(self) -> Mapping[str, str]:
        """Read-only view of the current contents."""
        return MappingProxyType(dict(self._values))

    def save(self, path: Union[str, Path]) -> Path:
        """Persist contents (with producers) as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            key: {"value": value, "producer": self._producers.get(key)}
            for key, value in sorted(self._values.items())
        }
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return path
