from __future__ import annotations

import re


def slugify_name(name: str, *, max_length: int = 48) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:max_length].rstrip("-")


def binding_key(role: str, name: str | None = None) -> str:
    """Stable key a generator uses to find an axis again, e.g. ``phase:rough-in``."""
    if name is None:
        return slugify_name(role)
    slug = slugify_name(name)
    if not slug:
        raise ValueError(f"name {name!r} has no characters usable in a binding key")
    return f"{slugify_name(role)}:{slug}"
