"""
Frame reconstruction: replay differential frames onto a full canvas.

Each raw frame only carries the patch that changed.  Reconstruction keeps
one mutable RGBA canvas per run and, for every raw frame:

    1. Apply the *previous* frame's disposal (one step behind: disposal
       describes what happens after a frame's display period, which is
       exactly when the next frame starts compositing).
    2. Paste the patch at its placement offset (plain overwrite).
    3. Emit a snapshot copy of the canvas.

``RESTORE_PREVIOUS`` is approximated as a no-op; the canvas is not
restored from a history stack.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Iterator

from PIL import Image

from gifcrop.types import CanvasFrame, DisposalMode, Placement, RawFrame

logger = logging.getLogger(__name__)

TRANSPARENT = (0, 0, 0, 0)


def _keep(canvas: Image.Image, placement: Placement) -> None:
    pass


def _clear_to_transparent(canvas: Image.Image, placement: Placement) -> None:
    canvas.paste(TRANSPARENT, placement.box)


DisposalAction = Callable[[Image.Image, Placement], None]

# Transition applied to the canvas before the *next* frame is composited.
DISPOSAL_ACTIONS: Dict[DisposalMode, DisposalAction] = {
    DisposalMode.UNSPECIFIED: _keep,
    DisposalMode.NONE: _keep,
    DisposalMode.RESTORE_BACKGROUND: _clear_to_transparent,
    DisposalMode.RESTORE_PREVIOUS: _keep,   # approximation
}


def new_canvas(width: int, height: int) -> Image.Image:
    """Allocate a fully transparent canvas for one reconstruction run."""
    return Image.new("RGBA", (width, height), TRANSPARENT)


def apply_disposal(canvas: Image.Image, placement: Placement,
                   mode: DisposalMode) -> None:
    """Apply *mode* to *canvas* for a frame that occupied *placement*."""
    DISPOSAL_ACTIONS[mode](canvas, placement)


def composite_patch(canvas: Image.Image, frame: RawFrame) -> None:
    patch = frame.patch
    if patch.mode != "RGBA":
        patch = patch.convert("RGBA")
    canvas.paste(patch, (frame.placement.left, frame.placement.top))


def reconstruct(raw_frames: Iterable[RawFrame], width: int,
                height: int) -> Iterator[CanvasFrame]:
    """Yield the full bitmap visible at each raw frame, in order.

    The generator owns its canvas; emitted images are independent copies
    and later frames never alter earlier ones.
    """
    canvas = new_canvas(width, height)
    previous = None
    for index, frame in enumerate(raw_frames):
        if previous is not None:
            apply_disposal(canvas, previous.placement, previous.disposal)
        composite_patch(canvas, frame)
        yield CanvasFrame(image=canvas.copy(), delay_ms=frame.delay_ms, index=index)
        previous = frame
    logger.debug("Reconstructed %d frames on a %dx%d canvas",
                 0 if previous is None else index + 1, width, height)
