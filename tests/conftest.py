import pytest

import mutate

from models import Instance, InstanceRegistry


INSTANCES = [
    {
        "name": "minio_standard",
        "classification": "unclassified",
        "serviceUrl": "http://minio.minio-standard-system:443",
    },
    {
        "name": "minio_protected_b",
        "classification": "protected-b",
        "serviceUrl": "http://minio.minio-protected-b-system:443",
    },
    {
        "name": "minio_premium",
        "classification": "unclassified",
        "serviceUrl": "http://minio.minio-premium-system:443",
    },
]


class FakeProvider:
    def __init__(self, path):
        self.path = path

    def instances(self):
        return [Instance(**instance) for instance in INSTANCES]


@pytest.fixture()
def registry():
    return InstanceRegistry(tuple(FakeProvider(None).instances()))


@pytest.fixture()
def app():
    app = mutate.create_app(
        PROVIDER=FakeProvider,
        VAULT_ADDR_HTTPS=None,
        TESTING=True,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()
