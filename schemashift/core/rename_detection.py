"""Rename detection strategies.

A dropped column and an added column with the same shape and a similar
name are most likely one column that was renamed. Treating them as a
rename keeps the data; treating them as drop + add loses it.
"""

from difflib import SequenceMatcher
from typing import Protocol

from schemashift.core.schema_model import ColumnChange, ColumnRename


class RenameStrategy(Protocol):
    def detect(
        self,
        removed: list[ColumnChange],
        added: list[ColumnChange],
    ) -> list[ColumnRename]:
        """Pair removed and added columns that are really renames."""
        ...


class NoRenameStrategy:
    """Never reports renames; every difference stays a drop + add."""

    def detect(self, removed: list[ColumnChange], added: list[ColumnChange]) -> list[ColumnRename]:
        return []


class SimilarityRenameStrategy:
    """Name similarity plus identical column signature.

    Pairs are chosen greedily by descending similarity. When one removed
    column has two equally good candidates (or the other way round) the
    match is ambiguous and neither is paired.
    """

    def __init__(self, threshold: float = 0.7):
        self.threshold = threshold

    @staticmethod
    def similarity(left: str, right: str) -> float:
        return SequenceMatcher(None, left.lower(), right.lower()).ratio()

    def detect(self, removed: list[ColumnChange], added: list[ColumnChange]) -> list[ColumnRename]:
        candidates = []
        for r_pos, old in enumerate(removed):
            for a_pos, new in enumerate(added):
                if old.column.signature() != new.column.signature():
                    continue
                score = self.similarity(old.fieldname, new.fieldname)
                if score >= self.threshold:
                    candidates.append((score, r_pos, a_pos))

        # Highest score first, then declaration order
        candidates.sort(key=lambda c: (-c[0], c[1], c[2]))

        renames = []
        used_removed: set[int] = set()
        used_added: set[int] = set()
        for score, r_pos, a_pos in candidates:
            if r_pos in used_removed or a_pos in used_added:
                continue
            if self._is_ambiguous(candidates, score, r_pos, a_pos, used_removed, used_added):
                used_removed.add(r_pos)
                used_added.add(a_pos)
                continue
            used_removed.add(r_pos)
            used_added.add(a_pos)
            old, new = removed[r_pos], added[a_pos]
            renames.append(ColumnRename(
                from_name=old.fieldname,
                to_name=new.fieldname,
                column=new.column,
                similarity=round(score, 4),
            ))
        return renames

    @staticmethod
    def _is_ambiguous(candidates, score, r_pos, a_pos, used_removed, used_added) -> bool:
        for other_score, other_r, other_a in candidates:
            if other_score != score or (other_r, other_a) == (r_pos, a_pos):
                continue
            if other_r in used_removed or other_a in used_added:
                continue
            if other_r == r_pos or other_a == a_pos:
                return True
        return False
