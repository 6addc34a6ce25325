import pytest

from evidence_store.config import ServiceConfig
from evidence_store.core import (
    EvidenceContentRepository,
    InMemoryDigestEndpoint,
    InMemoryObjectStore,
    ObjectLocator,
    VerificationService,
)
from evidence_store.db import InMemoryEvidenceMetadataStore

from factories import FixedClock


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store(clock):
    return InMemoryEvidenceMetadataStore(clock=clock)


@pytest.fixture
def endpoint():
    return InMemoryDigestEndpoint()


@pytest.fixture
def locator():
    return ObjectLocator(host="store.example", signing_secret="test-secret")


@pytest.fixture
def content(locator):
    return EvidenceContentRepository(
        store=InMemoryObjectStore(),
        locator=locator,
        bucket="evidence-content",
    )


@pytest.fixture
def service(store, endpoint, content, clock):
    return VerificationService(
        store=store,
        digest_endpoint=endpoint,
        content=content,
        config=ServiceConfig(table_name="evidences", default_timeout=1.0),
        clock=clock,
    )
