"""Capture a booted VM's state into a compressed snapshot artifact."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .engine import VMEngine
from .errors import CaptureError
from .serial_console import ReadinessDetector, wait_for_prompt
from .snapshot import write_state


@dataclass(frozen=True)
class CaptureResult:
    path: Path
    raw_size: int
    compressed_size: int
    boot_s: float


def capture_state(
    engine: VMEngine,
    destination: str | Path,
    *,
    detector: ReadinessDetector | None = None,
    image_path: str | Path | None = None,
    echo: Callable[[int], None] | None = None,
    timeout_s: float | None = None,
) -> CaptureResult:
    """Boot ``engine``, wait for readiness, and persist its compressed state.

    ``image_path`` names the filesystem image the engine booted from; it is
    deleted once the snapshot has been written. The engine is always stopped
    before returning.
    """
    target = Path(destination)
    try:
        boot_s = wait_for_prompt(
            engine,
            detector,
            action=engine.run,
            echo=echo,
            timeout_s=timeout_s,
        )
        state = engine.capture()
        compressed_size = write_state(target, state)
        if image_path is not None:
            Path(image_path).unlink(missing_ok=True)
    except Exception as exc:
        raise CaptureError(f"State capture failed: {exc}") from exc
    finally:
        engine.stop()

    return CaptureResult(
        path=target,
        raw_size=len(state),
        compressed_size=compressed_size,
        boot_s=boot_s,
    )
