"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
External links of projects, milestones and runs.

Links have no destination table of their own. Each one becomes a paragraph
holding a hyperlink, appended to the owner's ``docs`` document. A link whose
URL the document already contains is counted as mapped, which keeps re-runs
from appending it twice.
"""

from collections.abc import Iterator, Mapping
from typing import Any

from sqlalchemy.orm import Session

from tmimport.importers.base import EntitySummary, ImportRuntime
from tmimport.normalization import append_to_doc, link_paragraph, to_int, to_rich_text_doc, to_str
from tmimport.staging import StagedRow


def _walk(node: Any) -> Iterator[Mapping[str, Any]]:
    if isinstance(node, Mapping):
        yield node
        for child in node.get("content") or []:
            yield from _walk(child)


def linked_urls(doc: Any) -> set[str]:
    """Every ``href`` of a link mark in a rich text document."""
    urls: set[str] = set()
    for node in _walk(to_rich_text_doc(doc)):
        for mark in node.get("marks") or []:
            if isinstance(mark, Mapping) and mark.get("type") == "link":
                href = (mark.get("attrs") or {}).get("href")
                if href:
                    urls.add(href)
    return urls


def import_links(
    runtime: ImportRuntime,
    entity: str,
    dataset: str,
    owner_field: str,
    owner_ids: Mapping[int, int],
    model: Any,
    chunk_size: int,
    timeout_ms: int | None = None,
) -> EntitySummary:
    """
    Append the links of one dataset to their owners' docs.

    Args:
        entity: Entity name used for progress and the summary
        dataset: Dataset holding ``{<owner_field>, name, url, note}`` rows
        owner_field: Column holding the owner's source id
        owner_ids: Source to destination ids of the owners
        model: Owner model; it must have a JSON ``docs`` column
    """
    summary = EntitySummary(entity)

    def handle(session: Session, row: StagedRow) -> None:
        owner_id = owner_ids.get(to_int(row.data.get(owner_field)))
        name = to_str(row.data.get("name"))
        url = to_str(row.data.get("url"))
        if owner_id is None or not name or not url:
            runtime.skip(
                summary,
                "Skipping link with unmapped owner or missing name or url",
                ownerSourceId=to_int(row.data.get(owner_field)),
            )
            return
        owner = session.get(model, owner_id)
        if owner is None:
            runtime.skip(summary, "Skipping link whose owner no longer exists", ownerSourceId=to_int(row.data.get(owner_field)))
            return
        if url in linked_urls(owner.docs):
            runtime.mapped(summary)
            return
        owner.docs = append_to_doc(owner.docs, [link_paragraph(name, url, to_str(row.data.get("note")))])
        runtime.created(summary)

    runtime.run_chunks(entity, runtime.staged_rows(dataset), runtime.policy(chunk_size, timeout_ms), handle)
    return summary
