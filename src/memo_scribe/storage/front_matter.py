"""Reading and writing YAML front matter blocks in markdown notes."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import yaml

__all__ = ["FrontMatterError", "parse_front_matter", "render_front_matter"]

DELIMITER = "---"


class FrontMatterError(ValueError):
    """Raised when a front matter block exists but cannot be parsed."""


def parse_front_matter(text: str) -> tuple[dict[str, Any], str]:
    """Split a markdown document into its front matter mapping and body.

    Documents without a leading ``---`` block yield an empty mapping.
    """
    if not text.startswith(DELIMITER):
        return {}, text

    lines = text.splitlines(keepends=True)
    if lines[0].rstrip("\r\n") != DELIMITER:
        return {}, text

    for index in range(1, len(lines)):
        if lines[index].rstrip("\r\n") == DELIMITER:
            raw = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            break
    else:
        raise FrontMatterError("Front matter block is not terminated.")

    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise FrontMatterError(f"Invalid front matter: {exc}") from exc
    if not isinstance(data, dict):
        raise FrontMatterError("Front matter must be a mapping.")
    return data, body


def render_front_matter(data: Mapping[str, Any], body: str) -> str:
    """Prefix ``body`` with ``data`` serialised as a YAML front matter block."""
    dumped = yaml.safe_dump(
        dict(data),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )
    if not body.endswith("\n"):
        body += "\n"
    return f"{DELIMITER}\n{dumped}{DELIMITER}\n{body}"
