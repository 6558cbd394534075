"""Applying a CodeChange to file content."""

from __future__ import annotations

from morphos.evolution.models import CodeChange
from morphos.exceptions import MutationApplyError
from morphos.types import ChangeKind


def apply_change(content: str | None, change: CodeChange) -> str | None:
    """Return the new file content, or None when the file should be removed.

    `content` is None for a file that does not exist yet. Modifications
    replace the first occurrence of `old_code`; an identical old/new pair
    leaves the content as it is.
    """
    if change.change_type == ChangeKind.ADDITION:
        if content is None:
            return change.new_code
        if change.old_code:
            anchor = content.find(change.old_code)
            if anchor < 0:
                raise MutationApplyError(f"Anchor not found in {change.file_path}")
            end = anchor + len(change.old_code)
            return content[:end] + change.new_code + content[end:]
        return content + change.new_code

    if content is None:
        raise MutationApplyError(f"Target does not exist: {change.file_path}")

    if change.change_type == ChangeKind.DELETION:
        if not change.old_code or change.old_code == content:
            return None
        if change.old_code not in content:
            raise MutationApplyError(f"Code to delete not found in {change.file_path}")
        return content.replace(change.old_code, "", 1)

    # modification / refactor
    if change.old_code == change.new_code:
        return content
    if not change.old_code:
        raise MutationApplyError(f"Modification without original code for {change.file_path}")
    if change.old_code not in content:
        raise MutationApplyError(f"Original code not found in {change.file_path}")
    return content.replace(change.old_code, change.new_code, 1)
