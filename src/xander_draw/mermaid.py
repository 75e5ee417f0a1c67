"""
Mermaid to Excalidraw Conversion
================================

Converts Mermaid text into Excalidraw elements.

An optional external converter is tried first; if it is not configured or
fails for any reason, the local flowchart parser and layout engine are used.
"""

import asyncio
import contextlib
import json
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from .flowchart import compile_flowchart
from .shapes import gen_id

logger = logging.getLogger(__name__)


class ConverterError(RuntimeError):
    """The external converter could not produce elements."""


class TextToElementsConverter(Protocol):
    async def convert(self, definition: str) -> list[dict]:
        ...


# ============================================================================
# npx Converter
# ============================================================================

class NpxMermaidConverter:
    """Runs ``@excalidraw/mermaid-to-excalidraw`` through npx.

    Requires Node.js with the package installed; ``--no-install`` keeps npx
    from fetching it on demand.
    """

    package = "@excalidraw/mermaid-to-excalidraw"

    def __init__(self, timeout: float = 60, npx: str = "npx"):
        self.timeout = timeout
        self.npx = npx

    @classmethod
    def available(cls, npx: str = "npx") -> bool:
        return shutil.which(npx) is not None

    async def convert(self, definition: str) -> list[dict]:
        with tempfile.TemporaryDirectory(prefix="xander-draw-") as tmp:
            mmd_path = Path(tmp) / "diagram.mmd"
            out_path = Path(tmp) / "diagram.excalidraw"
            mmd_path.write_text(definition.strip(), encoding="utf-8")

            cmd = [self.npx, "--no-install", self.package, str(mmd_path), "-o", str(out_path)]
            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise ConverterError(f"Could not run {self.npx}: {e}") from e

            try:
                _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                raise ConverterError(f"Mermaid conversion timed out after {self.timeout:g} seconds") from e
            finally:
                # Also reached when the caller is cancelled
                if process.returncode is None:
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()

            if process.returncode != 0:
                stderr_text = stderr.decode("utf-8", errors="replace").strip() if stderr else ""
                raise ConverterError(
                    f"Mermaid conversion failed (exit {process.returncode}): {stderr_text}"
                )

            if not out_path.exists() or out_path.stat().st_size == 0:
                raise ConverterError("Conversion produced no output file")

            try:
                data = json.loads(out_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise ConverterError(f"Invalid converter output: {e}") from e

        elements = data.get("elements") if isinstance(data, dict) else None
        if not isinstance(elements, list):
            raise ConverterError("Converter output has no elements list")
        return elements


# ============================================================================
# Diagram Compiler
# ============================================================================

class DiagramCompiler:
    """Compiles Mermaid text, preferring ``converter`` when one is registered."""

    def __init__(self, converter: Optional[TextToElementsConverter] = None):
        self.converter = converter

    async def compile_text(self, definition: str) -> list[dict]:
        if self.converter is not None:
            try:
                elements = await self.converter.convert(definition)
            except Exception as e:
                logger.warning("External Mermaid converter failed, using local parser: %s", e)
            else:
                if isinstance(elements, list):
                    return _ensure_ids(elements)
                logger.warning("External Mermaid converter returned %s, using local parser",
                               type(elements).__name__)

        return compile_flowchart(definition)


def _ensure_ids(elements: list) -> list[dict]:
    result = []
    for elem in elements:
        if not isinstance(elem, dict):
            logger.warning("Dropping non-object element from converter output")
            continue
        if not elem.get("id"):
            elem = {**elem, "id": gen_id()}
        result.append(elem)
    return result


def create_converter(kind: str, timeout: float = 60) -> Optional[TextToElementsConverter]:
    """Build the converter selected by configuration ("auto", "npx" or "none")."""
    kind = kind.lower()
    if kind == "none":
        return None
    if kind == "npx":
        return NpxMermaidConverter(timeout=timeout)
    if kind == "auto":
        if NpxMermaidConverter.available():
            return NpxMermaidConverter(timeout=timeout)
        logger.info("npx not found, Mermaid conversion uses the local parser only")
        return None
    raise ValueError(f"Unknown Mermaid converter: {kind!r} (expected auto, npx or none)")
