"""
Render dispatch: turn a validated generation request into PDF bytes.

The heavy lifting is done by the external ``typst`` binary. Each
``TypstContext`` owns a scratch directory and is checked out of the
RenderPool for the duration of one render, so concurrent renders never share
files and the number of running compilers is bounded by the pool size.

Templates are read through ``TemplateStore``, an explicit cache keyed by path
and modification time.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .errors import RenderEngineUnavailable, RenderError, RenderTimeoutError, UnsupportedDocumentType
from .models import DocumentType, GenerationRequest
from .page_pool import RenderPool
from .utils import sanitize_label

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
FALLBACK_TEMPLATE = "generic"

PAPER_SIZES = {
    "A3": "a3",
    "A4": "a4",
    "A5": "a5",
    "Letter": "us-letter",
    "Legal": "us-legal",
}


class RenderContext(Protocol):
    def render(self, source: str, data: Dict[str, Any]) -> bytes:
        ...

    def reset(self) -> None:
        ...

    def close(self) -> None:
        ...


class TypstContext:
    """
    One isolated typst workspace.

    ``render`` writes ``main.typ`` and ``data.json`` into the workspace and
    compiles them; the template reads its data with ``json("data.json")``.
    """

    def __init__(self, binary: str = "typst", timeout: float = 30.0):
        self.binary = binary
        self.timeout = timeout
        self.workdir = Path(tempfile.mkdtemp(prefix="papyrus-typst-"))

    def render(self, source: str, data: Dict[str, Any]) -> bytes:
        input_path = self.workdir / "main.typ"
        output_path = self.workdir / "output.pdf"
        input_path.write_text(source, encoding="utf-8")
        (self.workdir / "data.json").write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")

        try:
            proc = subprocess.run(
                [self.binary, "compile", str(input_path), str(output_path)],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                cwd=self.workdir,
            )
        except FileNotFoundError as exc:
            raise RenderEngineUnavailable(f"typst binary '{self.binary}' not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise RenderTimeoutError(f"typst did not finish within {self.timeout:.0f}s") from exc

        if proc.returncode != 0:
            raise RenderError(proc.stderr.strip() or f"typst exited with code {proc.returncode}")
        return output_path.read_bytes()

    def reset(self) -> None:
        if not self.workdir.is_dir():
            raise RuntimeError(f"Workspace {self.workdir} is gone")
        for entry in self.workdir.iterdir():
            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink()

    def close(self) -> None:
        shutil.rmtree(self.workdir, ignore_errors=True)

    @classmethod
    def check_engine(cls, binary: str = "typst") -> str:
        """Return the engine version string, or raise RenderEngineUnavailable."""
        try:
            proc = subprocess.run([binary, "--version"], capture_output=True, text=True, timeout=10)
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            raise RenderEngineUnavailable(f"typst not available: {exc}") from exc
        if proc.returncode != 0:
            raise RenderEngineUnavailable("typst not available")
        return proc.stdout.strip()


class TemplateStore:
    """
    Read-through cache of template sources.

    A cached entry is reused while the file's ``st_mtime_ns`` is unchanged;
    ``invalidate`` drops one entry or the whole cache.
    """

    def __init__(self, directory: Optional[Path] = None):
        self.directory = Path(directory) if directory else DEFAULT_TEMPLATES_DIR
        self._cache: Dict[str, Tuple[int, str]] = {}
        self._lock = threading.Lock()

    def path_for(self, name: str) -> Path:
        candidate = self.directory / f"{name}.typ"
        if candidate.exists():
            return candidate
        return self.directory / f"{FALLBACK_TEMPLATE}.typ"

    def get(self, name: str) -> str:
        path = self.path_for(name)
        try:
            mtime = path.stat().st_mtime_ns
        except FileNotFoundError as exc:
            raise UnsupportedDocumentType(name) from exc

        with self._lock:
            cached = self._cache.get(name)
            if cached and cached[0] == mtime:
                return cached[1]

        source = path.read_text(encoding="utf-8")
        with self._lock:
            self._cache[name] = (mtime, source)
        return source

    def invalidate(self, name: Optional[str] = None) -> None:
        with self._lock:
            if name is None:
                self._cache.clear()
            else:
                self._cache.pop(name, None)

    def available(self) -> List[str]:
        return [document_type.value for document_type in DocumentType]


@dataclass
class RenderedDocument:
    content: bytes
    filename: str
    content_type: str = "application/pdf"


def flatten_fields(data: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
    """Flatten nested request data into ``"a.b": "value"`` strings the templates can print."""
    fields: Dict[str, str] = {}
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            fields.update(flatten_fields(value, prefix=f"{name}."))
        elif isinstance(value, list):
            for index, item in enumerate(value, start=1):
                if isinstance(item, dict):
                    fields.update(flatten_fields(item, prefix=f"{name}.{index}."))
                else:
                    fields[f"{name}.{index}"] = str(item)
        elif value is not None:
            fields[name] = str(value)
    return fields


def build_template_data(request: GenerationRequest) -> Dict[str, Any]:
    page = request.config
    return {
        "type": request.type,
        "title": request.title,
        "lang": request.language.split("-")[0],
        "region": request.language.split("-")[-1],
        "paper": PAPER_SIZES[page.format],
        "landscape": page.orientation == "landscape",
        "margin": page.margin.model_dump(exclude_none=True) if page.margin else {},
        "data": request.data,
        "fields": flatten_fields(request.data),
    }


def document_filename(title: str, job_id: str) -> str:
    return f"{sanitize_label(title, fallback='document')}-{job_id}.pdf"


class RenderDispatcher:
    """
    Render a request with a pooled context.

    Args:
        pool: Pool of render contexts owned by this process
        templates: Template cache
        acquire_timeout: Seconds to wait for a context before giving up (transient)
    """

    def __init__(self, pool: RenderPool[RenderContext], templates: TemplateStore, acquire_timeout: Optional[float] = None):
        self.pool = pool
        self.templates = templates
        self.acquire_timeout = acquire_timeout

    def render(self, request: GenerationRequest, job_id: str) -> RenderedDocument:
        if request.type not in self.templates.available():
            raise UnsupportedDocumentType(request.type)

        source = self.templates.get(request.type)
        data = build_template_data(request)
        logger.info(f"Rendering {request.type} '{request.title}' ({request.language}) for job {job_id}")

        with self.pool.lease(self.acquire_timeout) as context:
            content = context.render(source, data)

        if not content:
            raise RenderError("Render engine produced an empty document")
        logger.info(f"Rendered job {job_id}: {round(len(content) / 1024)} KB")
        return RenderedDocument(content=content, filename=document_filename(request.title, job_id))
