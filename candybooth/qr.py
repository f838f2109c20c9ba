from __future__ import annotations

import io

import cv2
import numpy as np
import qrcode
from PIL import Image


def make_qr_image(url: str, size_px: int = 256) -> Image.Image:
    qr_img = qrcode.make(url, border=1).convert("RGB")
    return qr_img.resize((size_px, size_px), Image.NEAREST)


def make_qr_png(url: str, size_px: int = 256) -> bytes:
    out = io.BytesIO()
    make_qr_image(url, size_px).save(out, format="PNG")
    return out.getvalue()


def make_qr_tile(url: str, size_px: int = 180) -> np.ndarray:
    """QR code as a BGR tile for drawing into OpenCV frames."""
    qr_np = np.array(make_qr_image(url, size_px))
    return cv2.cvtColor(qr_np, cv2.COLOR_RGB2BGR)
