"""Knowledge ingestion: extraction to embedded, retrievable chunks.

Submodules are imported explicitly (``knowledgebase.ingestion.pipeline`` and
friends); the package namespace stays empty because the extraction layer
depends on :mod:`knowledgebase.ingestion.errors`.
"""
