import json
import logging
import os

from pydantic import ValidationError
from typing_extensions import Protocol, override

from exc import ProviderError
from models import Instance

LOG = logging.getLogger(__name__)


DEFAULT_INSTANCES = [
    {
        "name": "minio_standard",
        "alias": "",
        "classification": "unclassified",
        "serviceUrl": "http://minio.minio-standard-system:443",
        "externalUrl": "https://minio-standard.aaw-dev.cloud.statcan.ca",
    },
    {
        "name": "minio_premium",
        "alias": "",
        "classification": "unclassified",
        "serviceUrl": "http://minio.minio-premium-system:443",
        "externalUrl": "https://minio-premium.aaw-dev.cloud.statcan.ca",
    },
    {
        "name": "minio_protected_b",
        "alias": "",
        "classification": "protected-b",
        "serviceUrl": "http://minio.minio-protected-b-system:443",
        "externalUrl": "",
    },
]


class Provider(Protocol):
    def instances(self) -> list[Instance]: ...


def parse_instances(text: str) -> list[dict]:
    """Parse either a JSON array of instances or a stream of concatenated
    JSON objects, one instance per object."""

    decoder = json.JSONDecoder()
    text = text.strip()

    if text.startswith("["):
        return json.loads(text)

    records = []
    pos = 0
    while pos < len(text):
        record, pos = decoder.raw_decode(text, pos)
        records.append(record)
        while pos < len(text) and text[pos].isspace():
            pos += 1

    return records


def load_instances(records) -> list[Instance]:
    if not isinstance(records, list):
        raise ProviderError("instance configuration must be a list of objects")

    try:
        instances = [Instance.model_validate(record) for record in records]
    except ValidationError as err:
        LOG.error("invalid instance configuration: %s", err)
        raise ProviderError("invalid instance configuration")

    for instance in instances:
        LOG.info(
            "Configured instance %s (%s): %s",
            instance.name,
            instance.classification,
            instance.serviceUrl,
        )

    return instances


class StaticProvider(Provider):
    def __init__(self, path=None, instances=None):
        """Serve a fixed list of instances; `path` is accepted so every
        provider can be built the same way and is ignored."""

        super().__init__()
        self._records = DEFAULT_INSTANCES if instances is None else instances

    @override
    def instances(self):
        return load_instances(self._records)


class FileProvider(Provider):
    def __init__(self, path):
        """Read instances from `path`, falling back to the built-in list when
        the file does not exist."""

        super().__init__()
        self.path = path

    @override
    def instances(self):
        if not os.path.exists(self.path):
            LOG.info("%s not found; using default instances", self.path)
            return load_instances(DEFAULT_INSTANCES)

        try:
            with open(self.path) as fd:
                records = parse_instances(fd.read())
        except OSError as err:
            LOG.error("unable to read %s: %s", self.path, err)
            raise ProviderError(f"unable to read {self.path}")
        except json.JSONDecodeError as err:
            LOG.error("unable to parse %s: %s", self.path, err)
            raise ProviderError(f"unable to parse {self.path}")

        return load_instances(records)
