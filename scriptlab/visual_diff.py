"""Screenshot hashing and pixel-level comparison against a stored baseline."""

from __future__ import annotations

import hashlib
import shutil
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, ImageChops

from .models import VisualDiffResult
from .run_logger import RunLogger

BASELINE_FILENAME = "screenshot.png"
DIFF_FILENAME = "visual-diff.png"
HIGHLIGHT = (255, 0, 0, 180)

STATUS_SKIPPED = "skipped"
STATUS_BASELINE_CREATED = "baseline_created"
STATUS_MATCH = "match"
STATUS_CHANGED = "changed"
STATUS_WITHIN_THRESHOLD = "within_threshold"
STATUS_UNAVAILABLE = "unavailable"


class SizeMismatchError(ValueError):
    pass


def sha256_file(path: Path) -> str:
    return hashlib.sha256(Path(path).read_bytes()).hexdigest()


def diff_images(baseline: Image.Image, current: Image.Image, threshold: float = 0.0) -> Tuple[int, Image.Image]:
    """Count changed pixels and build a transparent overlay marking them.

    A pixel is changed when any of its R, G or B channels differs by more than
    `threshold`. Negative thresholds count as 0.
    """
    base = baseline.convert("RGB")
    curr = current.convert("RGB")
    if base.size != curr.size:
        raise SizeMismatchError(
            f"size mismatch: baseline {base.size[0]}x{base.size[1]}, current {curr.size[0]}x{curr.size[1]}"
        )
    limit = max(0.0, float(threshold))
    bands = [band.point(lambda v: 255 if v > limit else 0) for band in ImageChops.difference(base, curr).split()]
    mask = ImageChops.lighter(ImageChops.lighter(bands[0], bands[1]), bands[2])
    changed = mask.histogram()[255]

    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    if changed:
        overlay.paste(HIGHLIGHT, (0, 0, base.size[0], base.size[1]), mask)
    return changed, overlay


class VisualDiffer:
    """Compare the run's screenshot with `<baseline_dir>/screenshot.png`."""

    def __init__(self, run_logger: RunLogger):
        self.run_logger = run_logger

    def compare(
        self,
        screenshot_path: Path,
        *,
        baseline_dir: Optional[str],
        artifacts_dir: Path,
        threshold: float = 0.0,
    ) -> VisualDiffResult:
        screenshot_path = Path(screenshot_path)
        try:
            current_hash = sha256_file(screenshot_path)
        except OSError as e:
            self.run_logger.warn("visual", "screenshot unreadable", {"error": str(e)})
            return VisualDiffResult(status=STATUS_UNAVAILABLE, note="screenshot unavailable")

        if not baseline_dir:
            return VisualDiffResult(hash=current_hash, status=STATUS_SKIPPED)

        base_dir = Path(baseline_dir).expanduser()
        base_path = base_dir / BASELINE_FILENAME
        try:
            base_dir.mkdir(parents=True, exist_ok=True)
            if not base_path.exists():
                shutil.copyfile(screenshot_path, base_path)
                self.run_logger.info("visual", "baseline created", {"path": str(base_path)})
                return VisualDiffResult(hash=current_hash, status=STATUS_BASELINE_CREATED)
            base_hash = sha256_file(base_path)
        except OSError as e:
            self.run_logger.warn("visual", "baseline unavailable", {"error": str(e)})
            return VisualDiffResult(hash=current_hash, status=STATUS_UNAVAILABLE, note=f"baseline unavailable: {e}")

        if base_hash == current_hash:
            self.run_logger.info("visual", "screenshot matches baseline", None)
            return VisualDiffResult(hash=current_hash, status=STATUS_MATCH)

        self.run_logger.warn(
            "visual",
            "screenshot hash mismatch vs baseline",
            {"baseline": base_hash, "current": current_hash},
        )
        try:
            with Image.open(base_path) as base_img, Image.open(screenshot_path) as curr_img:
                width, height = curr_img.size
                changed, overlay = diff_images(base_img, curr_img, threshold)
        except SizeMismatchError as e:
            self.run_logger.warn("visual", "baseline/current size mismatch", {"detail": str(e)})
            return VisualDiffResult(hash=current_hash, status=STATUS_UNAVAILABLE, note=str(e))
        except OSError as e:
            self.run_logger.warn("visual", "decode failed", {"error": str(e)})
            return VisualDiffResult(hash=current_hash, status=STATUS_UNAVAILABLE, note=f"decode failed: {e}")

        total = width * height
        ratio = float(changed) / float(total) if total else 0.0
        if changed == 0:
            self.run_logger.info("visual", "differences within threshold", {"threshold": threshold})
            return VisualDiffResult(hash=current_hash, status=STATUS_WITHIN_THRESHOLD)

        diff_path = Path(artifacts_dir) / DIFF_FILENAME
        diff_name = ""
        try:
            overlay.save(diff_path, format="PNG")
            diff_name = diff_path.name
            self.run_logger.warn("visual", "diff image generated", {"path": str(diff_path), "pixels_changed": changed})
        except OSError as e:
            self.run_logger.warn("visual", "write diff failed", {"error": str(e)})
        return VisualDiffResult(
            hash=current_hash,
            changed=True,
            diff_image=diff_name,
            changed_pixels=changed,
            changed_ratio=ratio,
            status=STATUS_CHANGED,
        )
