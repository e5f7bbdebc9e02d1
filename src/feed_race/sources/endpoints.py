from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from feed_race.core.errors import EndpointStoreError
from feed_race.core.models import Endpoint

logger = logging.getLogger(__name__)

_SUPPORTED_SCHEMES = frozenset({"http", "https", "ws", "wss"})


class EndpointRecord(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    url: str
    token: str = ""
    provider: str = "Unknown"
    region: str = "Unknown"
    status: str = "active"
    description: str = ""

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        parts = urlsplit(value.strip())
        if parts.scheme not in _SUPPORTED_SCHEMES or not parts.netloc:
            raise ValueError(f"invalid endpoint URL: {value!r}")
        return value.strip()

    def to_endpoint(self) -> Endpoint:
        return Endpoint(id=self.id, display_name=self.name, address=self.url, credential=self.token)


class EndpointFile(BaseModel):
    endpoints: dict[str, EndpointRecord] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _keys_match_ids(self) -> EndpointFile:
        mismatched = sorted(key for key, record in self.endpoints.items() if key != record.id)
        if mismatched:
            raise ValueError(f"endpoint keys do not match their id field: {', '.join(mismatched)}")
        return self


class EndpointStore:
    """JSON-file store of candidate endpoints."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._data = EndpointFile()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> EndpointStore:
        if not self._path.exists():
            self._data = EndpointFile()
            return self
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            self._data = EndpointFile.model_validate(raw)
        except (json.JSONDecodeError, ValidationError) as exc:
            raise EndpointStoreError(f"Cannot read endpoint store {self._path}: {exc}") from exc
        return self

    def save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f".{self._path.name}.{uuid.uuid4().hex}.tmp")
        tmp_path.write_text(self._data.model_dump_json(indent=2), encoding="utf-8")
        tmp_path.replace(self._path)

    def records(self, *, status: str | None = None, provider: str | None = None) -> list[EndpointRecord]:
        selected: list[EndpointRecord] = []
        for record in self._data.endpoints.values():
            if status is not None and record.status != status:
                continue
            if provider is not None and record.provider.lower() != provider.lower():
                continue
            selected.append(record)
        return selected

    def list_endpoints(self, *, status: str | None = None, provider: str | None = None) -> list[Endpoint]:
        return [record.to_endpoint() for record in self.records(status=status, provider=provider)]

    def get(self, endpoint_id: str) -> EndpointRecord:
        record = self._data.endpoints.get(endpoint_id)
        if record is None:
            raise EndpointStoreError(f"Endpoint '{endpoint_id}' not found")
        return record

    def add(self, record: EndpointRecord) -> EndpointRecord:
        if record.id in self._data.endpoints:
            raise EndpointStoreError(f"Endpoint '{record.id}' already exists")
        self._data.endpoints[record.id] = record
        self.save()
        logger.info("Endpoint added", extra={"endpoint": record.id})
        return record

    def remove(self, endpoint_id: str) -> EndpointRecord:
        record = self.get(endpoint_id)
        del self._data.endpoints[endpoint_id]
        self.save()
        logger.info("Endpoint removed", extra={"endpoint": endpoint_id})
        return record
