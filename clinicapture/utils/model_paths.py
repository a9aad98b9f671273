from __future__ import annotations

import os
from pathlib import Path


def project_root() -> Path:
    # clinicapture/utils/model_paths.py -> clinicapture -> repo root
    return Path(__file__).resolve().parents[2]


def model_search_roots() -> list[Path]:
    roots: list[Path] = []
    model_root = os.getenv("CLINICAPTURE_MODEL_ROOT", "").strip()
    if model_root:
        roots.append(Path(model_root).expanduser())
    base = project_root()
    roots.extend([base / "models", base])
    out: list[Path] = []
    seen: set[str] = set()
    for item in roots:
        key = str(item)
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def discover_gguf() -> str:
    for root in model_search_roots():
        try:
            found = sorted(root.glob("*.gguf"))
        except OSError:
            continue
        if found:
            return str(found[0].resolve())
    return ""


def resolve_gguf_path(explicit_path: str | None = None) -> str:
    """
    Resolve the local GGUF model path with precedence:
    1) explicit arg (CLINICAPTURE_LLAMA_CPP_MODEL via config)
    2) first *.gguf under CLINICAPTURE_MODEL_ROOT, ./models or the repo root
    """

    explicit = str(explicit_path or "").strip()
    if explicit:
        return explicit
    return discover_gguf()
