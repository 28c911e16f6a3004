from __future__ import annotations

import base64
import io

import qrcode
from PIL import Image


PNG_DATA_URL_PREFIX = "data:image/png;base64,"


def build_qr_png(payload: str, *, size: int = 250) -> bytes:
    """Render ``payload`` as a square PNG ``size`` pixels wide."""

    if not payload:
        raise ValueError("empty_payload")
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    if img.size != (size, size):
        img = img.resize((size, size), Image.NEAREST)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def build_qr_data_url(payload: str, *, size: int = 250) -> str:
    png = build_qr_png(payload, size=size)
    return PNG_DATA_URL_PREFIX + base64.b64encode(png).decode("ascii")


__all__ = ["PNG_DATA_URL_PREFIX", "build_qr_data_url", "build_qr_png"]
