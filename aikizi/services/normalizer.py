# aikizi/services/normalizer.py
"""
Normalizador de la respuesta del modelo.

El modelo devuelve texto libre que *debería* ser JSON, pero a menudo llega
envuelto en ```json ... ```, con prosa alrededor o con comas colgantes.
`parse()` prueba varias estrategias en orden y luego fuerza el esquema
canónico (styleCodes / tags / subjects / prompts).
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from aikizi.errors import UnparsableResponse

log = logging.getLogger(__name__)

ARRAY_FIELDS = ("styleCodes", "tags", "subjects")
PROMPT_FIELDS = ("story", "mix", "expand", "sound")

# claves del esquema "rico" (title/style/keyTokens/...Prompts)
LEGACY_MARKERS = (
    "keyTokens",
    "creativeRemixes",
    "outpaintingPrompts",
    "animationPrompts",
    "musicPrompts",
    "dialoguePrompts",
    "storyPrompts",
)

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


# ---------------------------------------------------------
# Contador de resultados vacíos (observable en tests / healthz)
# ---------------------------------------------------------
_empty_lock = threading.Lock()
_empty_results = 0


def empty_result_count() -> int:
    return _empty_results


def _flag_empty() -> None:
    global _empty_results
    with _empty_lock:
        _empty_results += 1


# ---------------------------------------------------------
# Esquema canónico
# ---------------------------------------------------------
@dataclass(frozen=True)
class PromptBundle:
    story: str = ""
    mix: str = ""
    expand: str = ""
    sound: str = ""

    def to_dict(self) -> dict:
        return {"story": self.story, "mix": self.mix, "expand": self.expand, "sound": self.sound}


@dataclass(frozen=True)
class DecodeResult:
    style_codes: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    subjects: Tuple[str, ...] = ()
    prompts: PromptBundle = field(default_factory=PromptBundle)

    @property
    def is_empty(self) -> bool:
        return not (
            self.style_codes
            or self.tags
            or self.subjects
            or any(self.prompts.to_dict().values())
        )

    def to_dict(self) -> dict:
        return {
            "styleCodes": list(self.style_codes),
            "tags": list(self.tags),
            "subjects": list(self.subjects),
            "prompts": self.prompts.to_dict(),
        }


# ---------------------------------------------------------
# Estrategias de extracción
# ---------------------------------------------------------
def _try_json(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except (ValueError, TypeError, RecursionError):
        return None


def _direct(text: str) -> Optional[str]:
    t = text.strip()
    if t.startswith("{") and t.endswith("}"):
        return t
    return None


def _strip_fences(text: str) -> Optional[str]:
    t = _FENCE_RE.sub("", text).replace("`", "").strip()
    return t or None


def _outer_braces(text: str) -> Optional[str]:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def _repair(text: str) -> Optional[str]:
    span = _outer_braces(_strip_fences(text) or "")
    if span is None:
        return None
    span = _CONTROL_RE.sub("", span)
    return _TRAILING_COMMA_RE.sub(r"\1", span)


STRATEGIES: List[Tuple[str, Callable[[str], Optional[str]]]] = [
    ("direct", _direct),
    ("strip_fences", _strip_fences),
    ("outer_braces", _outer_braces),
    ("repair", _repair),
]


def extract_json(raw_text: str) -> dict:
    """Devuelve el primer objeto JSON que alguna estrategia consiga leer."""
    text = raw_text or ""
    for name, strategy in STRATEGIES:
        candidate = strategy(text)
        if candidate is None:
            continue
        data = _try_json(candidate)
        if isinstance(data, dict):
            if name != "direct":
                log.debug("[normalizer] JSON recuperado con estrategia=%s", name)
            return data

    err = UnparsableResponse(raw_text=text, reason="no JSON object found")
    log.warning("[normalizer] respuesta ilegible preview=%r", err.preview)
    raise err


# ---------------------------------------------------------
# Coerción al esquema
# ---------------------------------------------------------
def _str_list(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(s.strip() for s in value if isinstance(s, str) and s.strip())


def _str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _first(value: Any) -> str:
    items = _str_list(value)
    return items[0] if items else ""


def _is_legacy(data: dict) -> bool:
    return "prompts" not in data and any(k in data for k in LEGACY_MARKERS)


def migrate_legacy(data: dict) -> dict:
    """Convierte el esquema rico al canónico."""
    tags = list(_str_list(data.get("keyTokens")))
    style = _str(data.get("style"))
    if style:
        tags.append(style)
    return {
        "styleCodes": data.get("styleCodes") or [],
        "tags": tags,
        "subjects": data.get("subjects") or [],
        "prompts": {
            "story": _first(data.get("storyPrompts")),
            "mix": _first(data.get("creativeRemixes")),
            "expand": _str(data.get("prompt")) or _first(data.get("outpaintingPrompts")),
            "sound": _first(data.get("musicPrompts")),
        },
    }


def coerce(data: dict) -> DecodeResult:
    if _is_legacy(data):
        data = migrate_legacy(data)

    prompts = data.get("prompts")
    if not isinstance(prompts, dict):
        prompts = {}

    return DecodeResult(
        style_codes=_str_list(data.get("styleCodes")),
        tags=_str_list(data.get("tags")),
        subjects=_str_list(data.get("subjects")),
        prompts=PromptBundle(**{k: _str(prompts.get(k)) for k in PROMPT_FIELDS}),
    )


def parse(raw_text: str) -> DecodeResult:
    """Texto del proveedor -> DecodeResult, o UnparsableResponse."""
    result = coerce(extract_json(raw_text))
    if result.is_empty:
        _flag_empty()
        log.warning("[normalizer] resultado vacío: el modelo respondió fuera del esquema")
    return result
