"""Split model output into human-readable prose and a typed structured block.

Model answers are free-form Markdown that may embed one fenced JSON block.
Malformed output is expected, so nothing here raises: problems come back as
warnings and ``structured`` stays ``None``.
"""

from __future__ import annotations

import json
import logging
import re
import typing
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..domain.artifacts import ArtifactShape


logger = logging.getLogger("qapilot.extractor")

T = TypeVar("T", bound=ArtifactShape)

_FENCE_RE = re.compile(
    r"(?P<fence>```|~~~)[ \t]*(?P<lang>[A-Za-z0-9_+-]*)[^\n]*\n(?P<body>.*?)(?P=fence)",
    re.DOTALL,
)
_STRUCTURED_LANGS = ("json", "jsonc", "json5", "")


@dataclass
class Extraction:
    prose: str
    structured: Optional[ArtifactShape] = None
    warnings: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    found: bool = False

    @property
    def complete(self) -> bool:
        return self.structured is not None and not self.missing


def _find_block(text: str) -> Optional[Tuple[str, Tuple[int, int]]]:
    fallback: Optional[Tuple[str, Tuple[int, int]]] = None
    for match in _FENCE_RE.finditer(text):
        lang = match.group("lang").strip().lower()
        body = match.group("body").strip()
        if lang not in _STRUCTURED_LANGS:
            continue
        if lang.startswith("json"):
            return body, match.span()
        if fallback is None and body[:1] in ("{", "["):
            fallback = (body, match.span())
    if fallback is not None:
        return fallback
    stripped = text.strip()
    if stripped[:1] in ("{", "[") and stripped[-1:] in ("}", "]"):
        start = text.index(stripped[0])
        return stripped, (start, start + len(stripped))
    return None


def _nested_model(annotation: Any) -> Tuple[Optional[Type[BaseModel]], bool]:
    """Return (model, is_list) when a field holds a model or a list of models."""
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation, False
    origin = typing.get_origin(annotation)
    if origin in (list, List):
        args = typing.get_args(annotation)
        if args and isinstance(args[0], type) and issubclass(args[0], BaseModel):
            return args[0], True
    return None, False


def _drop_unknown(data: Dict[str, Any], model: Type[BaseModel], path: str, warnings: List[str]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in data.items():
        info = model.model_fields.get(key)
        if info is None:
            warnings.append(f"dropped unknown field '{path}{key}'")
            continue
        nested, is_list = _nested_model(info.annotation)
        if nested is not None and is_list and isinstance(value, list):
            value = [
                _drop_unknown(item, nested, f"{path}{key}[{idx}].", warnings) if isinstance(item, dict) else item
                for idx, item in enumerate(value)
            ]
        elif nested is not None and isinstance(value, dict):
            value = _drop_unknown(value, nested, f"{path}{key}.", warnings)
        cleaned[key] = value
    return cleaned


def extract(raw_text: Optional[str], shape: Type[T]) -> Extraction:
    text = raw_text or ""
    found = _find_block(text)
    if found is None:
        return Extraction(prose=text.strip())

    payload, (start, end) = found
    prose = (text[:start] + text[end:]).strip()
    warnings: List[str] = []
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        warnings.append(f"structured block is not valid JSON: {exc.msg} (line {exc.lineno})")
        logger.debug("extract_unparsable", extra={"shape": shape.__name__, "err": exc.msg})
        return Extraction(prose=prose, warnings=warnings, found=True)

    if isinstance(data, list) and shape.ROOT_LIST_FIELD:
        data = {shape.ROOT_LIST_FIELD: data}
    if not isinstance(data, dict):
        warnings.append(f"structured block is a {type(data).__name__}, expected an object")
        return Extraction(prose=prose, warnings=warnings, found=True)

    cleaned = _drop_unknown(data, shape, "", warnings)
    try:
        structured = shape.model_validate(cleaned)
    except ValidationError as exc:
        for err in exc.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()))
            warnings.append(f"invalid value for '{loc}': {err.get('msg')}")
        return Extraction(prose=prose, warnings=warnings, found=True)

    missing = [name for name in shape.REQUIRED if _is_blank(cleaned.get(name))]
    return Extraction(prose=prose, structured=structured, warnings=warnings, missing=missing, found=True)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def encode_block(model: BaseModel) -> str:
    """Render ``model`` as the fenced block :func:`extract` understands."""
    body = json.dumps(model.model_dump(mode="json"), indent=2, ensure_ascii=False)
    return f"```json\n{body}\n```"
