from __future__ import annotations

def norm_path(p: str) -> str:
    """Normalize archive paths to a canonical forward-slash form.

    Rules:
    - Convert backslashes to slashes
    - Reject absolute paths and drive letters
    - Remove empty and '.' segments
    - Reject '..' segments
    """
    p = p.replace("\\", "/")
    if p.startswith("/") or (len(p) >= 2 and p[1] == ":"):
        raise ValueError(f"Absolute path not allowed in archive: {p!r}")
    parts = [q for q in p.split("/") if q not in ("", ".")]
    for q in parts:
        if q == "..":
            raise ValueError("Path may not contain '..'")
    if not parts:
        raise ValueError("Empty archive path")
    return "/".join(parts)
