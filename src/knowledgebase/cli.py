"""Operator CLI for the knowledge base: ingest sources, ask questions, review catalog jobs."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any
from uuid import UUID

from knowledgebase.bootstrap import Services, build_services
from knowledgebase.core.config import AppSettings
from knowledgebase.core.db import create_engine_from_settings, init_db
from knowledgebase.core.db.models import DocumentStatus, IngestKind, SourceKind
from knowledgebase.core.errors import CoreError
from knowledgebase.core.logging import configure_logging
from knowledgebase.ingestion.errors import IngestionError
from knowledgebase.ingestion.models import KnowledgeIngestTask
from knowledgebase.rag import BusinessProfile

Command = Callable[[Services, argparse.Namespace], Awaitable[Any]]


def _parse_uuid(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ingest tenant knowledge, query it, and review catalog proposals.",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Log level for structured output on stderr (default: %(default)s).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables.")

    extract = sub.add_parser("extract-url", help="Fetch a URL and print the extracted text.")
    extract.add_argument("url")
    extract.add_argument("--no-follow", action="store_true", help="Skip same-origin link following.")

    ingest = sub.add_parser("ingest", help="Create a knowledge document and ingest it inline.")
    ingest.add_argument("--tenant-id", required=True)
    source = ingest.add_mutually_exclusive_group(required=True)
    source.add_argument("--url")
    source.add_argument("--text-file", type=Path)
    source.add_argument("--storage-path", help="Object storage path of an uploaded file.")
    ingest.add_argument("--name", default=None, help="Display name for the document.")
    ingest.add_argument("--mime-type", default=None)
    ingest.add_argument(
        "--extract-catalog",
        choices=[kind.value for kind in IngestKind],
        default=None,
        help="Also propose catalog items of this kind from the document.",
    )
    ingest.add_argument("--catalog-target-id", default=None)

    documents = sub.add_parser("documents", help="List a tenant's knowledge documents.")
    documents.add_argument("--tenant-id", required=True)

    status = sub.add_parser("set-status", help="Enable or disable a knowledge document.")
    status.add_argument("--tenant-id", required=True)
    status.add_argument("--document-id", type=_parse_uuid, required=True)
    status.add_argument(
        "status", choices=[DocumentStatus.ACTIVE.value, DocumentStatus.DISABLED.value]
    )

    delete = sub.add_parser("delete", help="Delete a knowledge document and its chunks.")
    delete.add_argument("--tenant-id", required=True)
    delete.add_argument("--document-id", type=_parse_uuid, required=True)

    ask = sub.add_parser("ask", help="Answer a question from the tenant's knowledge.")
    ask.add_argument("--tenant-id", required=True)
    ask.add_argument("--business-name", default="our business")
    ask.add_argument("--category", default=None)
    ask.add_argument("question")

    submit = sub.add_parser("catalog-submit", help="Submit a catalog ingest job.")
    submit.add_argument("--tenant-id", required=True)
    submit.add_argument("--target-id", required=True)
    submit.add_argument("--kind", choices=[kind.value for kind in IngestKind], required=True)
    submit.add_argument("--url", action="append", default=[], dest="urls")
    submit.add_argument("--pdf", action="append", default=[], dest="pdfs")
    submit.add_argument("--image", action="append", default=[], dest="images")

    process = sub.add_parser("catalog-process", help="Process a queued catalog ingest job.")
    process.add_argument("--tenant-id", required=True)
    process.add_argument("--job-id", type=_parse_uuid, required=True)

    for name, help_text in (
        ("catalog-apply", "Apply a catalog proposal."),
        ("catalog-reject", "Reject a catalog proposal."),
    ):
        review = sub.add_parser(name, help=help_text)
        review.add_argument("--tenant-id", required=True)
        review.add_argument("--proposal-id", type=_parse_uuid, required=True)

    items = sub.add_parser("catalog-items", help="List catalog items for a target.")
    items.add_argument("--target-id", required=True)
    items.add_argument("--kind", choices=[kind.value for kind in IngestKind], required=True)

    return parser


async def _extract_url(services: Services, args: argparse.Namespace) -> dict[str, Any]:
    extracted = await services.extractor.extract_url(args.url, follow_links=not args.no_follow)
    return {"source": extracted.source, "mime_type": extracted.mime_type, "text": extracted.text}


async def _ingest(services: Services, args: argparse.Namespace) -> dict[str, Any]:
    if args.url:
        kind, name = SourceKind.URL, args.url
    elif args.text_file:
        kind, name = SourceKind.TEXT, args.text_file.name
    else:
        kind, name = SourceKind.FILE, args.storage_path

    document = await services.knowledge.create_document(
        args.tenant_id,
        source_kind=kind,
        source_name=args.name or name,
        source_text=args.text_file.read_text(encoding="utf-8") if args.text_file else None,
        source_url=args.url,
        storage_path=args.storage_path,
        mime_type=args.mime_type,
        extract_catalog=args.extract_catalog is not None,
        catalog_kind=IngestKind(args.extract_catalog) if args.extract_catalog else None,
        catalog_target_id=args.catalog_target_id,
    )
    report = await services.pipeline.run(
        KnowledgeIngestTask(tenant_id=args.tenant_id, document_id=document.id)
    )
    return {
        "document_id": report.document_id,
        "status": report.status,
        "chunks": report.chunk_count,
    }


async def _documents(services: Services, args: argparse.Namespace) -> list[dict[str, Any]]:
    documents = await services.knowledge.list_documents(args.tenant_id)
    return [
        {
            "id": str(document.id),
            "name": document.source_name,
            "kind": document.source_kind,
            "status": document.status,
            "chunks": document.chunk_count,
            "error": document.error,
            "catalog_status": document.catalog_status,
        }
        for document in documents
    ]


async def _set_status(services: Services, args: argparse.Namespace) -> dict[str, Any]:
    await services.knowledge.set_document_status(
        args.tenant_id, args.document_id, DocumentStatus(args.status)
    )
    return {"document_id": str(args.document_id), "status": args.status}


async def _delete(services: Services, args: argparse.Namespace) -> dict[str, Any]:
    removed = await services.knowledge.delete_document(args.tenant_id, args.document_id)
    return {"document_id": str(args.document_id), "chunks_removed": removed}


async def _ask(services: Services, args: argparse.Namespace) -> dict[str, Any]:
    answer = await services.answers.answer(
        args.tenant_id,
        args.question,
        BusinessProfile(name=args.business_name, category=args.category),
    )
    return {"answer": answer.text, "has_context": answer.has_context, "sources": answer.citations}


async def _catalog_submit(services: Services, args: argparse.Namespace) -> dict[str, Any]:
    sources: list[dict[str, str]] = [{"type": "url", "url": url} for url in args.urls]
    sources += [{"type": "pdf", "storagePath": path} for path in args.pdfs]
    sources += [{"type": "image", "storagePath": path} for path in args.images]
    submission = await services.catalog.submit_job(
        args.tenant_id, args.target_id, args.kind, sources
    )
    return {"job_id": str(submission.job_id), "reused": submission.reused}


async def _catalog_process(services: Services, args: argparse.Namespace) -> dict[str, Any]:
    proposal = await services.catalog.process_job(args.tenant_id, args.job_id)
    if proposal is None:
        job = await services.catalog.get_job(args.tenant_id, args.job_id)
        return {"job_id": str(args.job_id), "status": job.status, "error": job.error}
    return {
        "job_id": str(args.job_id),
        "status": "needs_review",
        "proposal_id": str(proposal.id),
        "items": proposal.extracted_items,
        "warnings": proposal.warnings,
    }


async def _catalog_apply(services: Services, args: argparse.Namespace) -> dict[str, Any]:
    written = await services.catalog.apply_proposal(args.tenant_id, args.proposal_id)
    return {"proposal_id": str(args.proposal_id), "status": "applied", "items": written}


async def _catalog_reject(services: Services, args: argparse.Namespace) -> dict[str, Any]:
    await services.catalog.reject_proposal(args.tenant_id, args.proposal_id)
    return {"proposal_id": str(args.proposal_id), "status": "rejected"}


async def _catalog_items(services: Services, args: argparse.Namespace) -> list[dict[str, Any]]:
    items = await services.catalog.list_items(args.target_id, args.kind)
    return [item.model_dump(mode="json") for item in items]


COMMANDS: dict[str, Command] = {
    "extract-url": _extract_url,
    "ingest": _ingest,
    "documents": _documents,
    "set-status": _set_status,
    "delete": _delete,
    "ask": _ask,
    "catalog-submit": _catalog_submit,
    "catalog-process": _catalog_process,
    "catalog-apply": _catalog_apply,
    "catalog-reject": _catalog_reject,
    "catalog-items": _catalog_items,
}


async def _dispatch(settings: AppSettings, args: argparse.Namespace) -> Any:
    services = build_services(settings)
    try:
        return await COMMANDS[args.command](services, args)
    finally:
        await services.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(getattr(logging, str(args.log_level).upper(), logging.WARNING))

    settings = AppSettings.load()
    if args.command == "init-db":
        init_db(create_engine_from_settings(settings))
        print("database tables created")
        return 0

    try:
        result = asyncio.run(_dispatch(settings, args))
    except IngestionError as exc:
        print(json.dumps({"error": exc.as_dict()}, indent=2), file=sys.stderr)
        return 1
    except CoreError as exc:
        print(json.dumps({"error": exc.to_dict()}, indent=2), file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
