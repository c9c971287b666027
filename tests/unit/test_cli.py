from __future__ import annotations

import json
from types import SimpleNamespace
from uuid import uuid4

import pytest

from knowledgebase import cli
from knowledgebase.core.errors import NotFoundError
from knowledgebase.ingestion.errors import DocumentLimitReached
from knowledgebase.ingestion.pipeline import IngestionReport

pytestmark = pytest.mark.unit


class StubKnowledge:
    def __init__(self, exc: Exception | None = None) -> None:
        self.exc = exc
        self.created: list[dict] = []

    async def create_document(self, tenant_id, **kwargs):  # noqa: ANN001, ANN003, ANN201
        if self.exc:
            raise self.exc
        self.created.append({"tenant_id": tenant_id, **kwargs})
        return SimpleNamespace(id=uuid4())

    async def delete_document(self, tenant_id, document_id):  # noqa: ANN001, ANN201
        raise NotFoundError("knowledge document not found")


class StubPipeline:
    async def run(self, task, context=None):  # noqa: ANN001, ANN201
        return IngestionReport(document_id=str(task.document_id), status="active", chunk_count=2)


class StubServices:
    def __init__(self, knowledge: StubKnowledge) -> None:
        self.knowledge = knowledge
        self.pipeline = StubPipeline()
        self.closed = False

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)


@pytest.fixture
def services(monkeypatch) -> StubServices:
    stub = StubServices(StubKnowledge())
    monkeypatch.setattr(cli, "build_services", lambda settings: stub)
    return stub


def test_parser_requires_a_single_ingest_source() -> None:
    parser = cli.build_parser()

    with pytest.raises(SystemExit):
        parser.parse_args(["ingest", "--tenant-id", "t", "--url", "u", "--storage-path", "p"])

    args = parser.parse_args(["ingest", "--tenant-id", "t", "--url", "https://example.com"])
    assert args.url == "https://example.com"


def test_parser_rejects_bad_uuid() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["delete", "--tenant-id", "t", "--document-id", "nope"])


def test_ingest_text_file(services: StubServices, tmp_path, capsys) -> None:
    source = tmp_path / "faq.txt"
    source.write_text("Parking is free for guests.", encoding="utf-8")

    code = cli.main(
        ["ingest", "--tenant-id", "tenant-a", "--text-file", str(source), "--extract-catalog", "services"]
    )

    assert code == 0
    output = json.loads(capsys.readouterr().out)
    assert output["status"] == "active"
    assert output["chunks"] == 2
    created = services.knowledge.created[0]
    assert created["source_name"] == "faq.txt"
    assert created["source_text"] == "Parking is free for guests."
    assert created["extract_catalog"] is True
    assert services.closed


def test_ingestion_errors_are_printed(monkeypatch, capsys) -> None:
    stub = StubServices(StubKnowledge(exc=DocumentLimitReached("Knowledge doc limit reached (50/50)")))
    monkeypatch.setattr(cli, "build_services", lambda settings: stub)

    code = cli.main(["ingest", "--tenant-id", "tenant-a", "--url", "https://example.com"])

    assert code == 1
    error = json.loads(capsys.readouterr().err)["error"]
    assert error["code"] == "document_limit_reached"
    assert stub.closed


def test_core_errors_are_printed(services: StubServices, capsys) -> None:
    code = cli.main(["delete", "--tenant-id", "tenant-a", "--document-id", str(uuid4())])

    assert code == 1
    assert json.loads(capsys.readouterr().err)["error"]["code"] == "not_found"
