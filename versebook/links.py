"""Undirected links between entries.

Links are stored as rows with a source and a target but are treated as
undirected everywhere: the sorted id pair (``pair_key``) identifies an edge,
so linking A to B and later B to A yields a single row.
"""
from typing import Dict, List, Optional

from versebook.events import log_store_event

ENTRY_LINKS = "entry_links"


def pair_key(entry_a: str, entry_b: str) -> str:
    low, high = sorted((entry_a, entry_b))
    return f"{low}:{high}"


class LinkStore:
    def __init__(self, documents):
        self.documents = documents

    def find(self, entry_a: str, entry_b: str) -> Optional[dict]:
        rows = self.documents.query(ENTRY_LINKS, {"pair_key": pair_key(entry_a, entry_b)})
        return rows[0] if rows else None

    def create(self, source_entry_id: str, target_entry_id: str, user_id: str) -> Optional[dict]:
        """Create a link; returns None when the pair is already linked."""
        if source_entry_id == target_entry_id:
            raise ValueError("an entry cannot be linked to itself")
        if self.find(source_entry_id, target_entry_id) is not None:
            log_store_event("entry_link_exists", {"entry_id": source_entry_id})
            return None
        link = self.documents.insert(
            ENTRY_LINKS,
            {
                "source_entry_id": source_entry_id,
                "target_entry_id": target_entry_id,
                "user_id": user_id,
                "pair_key": pair_key(source_entry_id, target_entry_id),
            },
        )
        log_store_event("entry_link_created", {"link_id": link["id"], "user_id": user_id})
        return link

    def get_all_for_entry(self, entry_id: str) -> Dict[str, List[dict]]:
        return {
            "source_links": self.documents.query(ENTRY_LINKS, {"source_entry_id": entry_id}),
            "target_links": self.documents.query(ENTRY_LINKS, {"target_entry_id": entry_id}),
        }

    def get(self, link_id: str) -> Optional[dict]:
        return self.documents.get(ENTRY_LINKS, link_id)

    def delete(self, link_id: str) -> bool:
        deleted = self.documents.delete(ENTRY_LINKS, link_id)
        log_store_event("entry_link_deleted", {"link_id": link_id, "deleted": deleted})
        return deleted


def resolve_linked_entries(links: LinkStore, entries, entry_id: str) -> List[dict]:
    """Entries on the other side of every link touching ``entry_id``.

    Duplicates collapse to one entry and links whose other side no longer
    exists are skipped.
    """
    found = links.get_all_for_entry(entry_id)
    other_ids = [link["target_entry_id"] for link in found["source_links"]]
    other_ids += [link["source_entry_id"] for link in found["target_links"]]

    resolved: Dict[str, dict] = {}
    for other_id in other_ids:
        if other_id == entry_id or other_id in resolved:
            continue
        entry = entries.get_by_id(other_id)
        if entry is not None:
            resolved[other_id] = entry
    return list(resolved.values())
