import base64
from io import BytesIO

import qrcode
from qrcode.constants import ERROR_CORRECT_M


def short_url(base_url: str, code: str) -> str:
    return f"{base_url.rstrip('/')}/{code}"


def generate_qr_base64(data: str) -> str:
    """PNG QR code for ``data``, base64 encoded."""
    qr = qrcode.QRCode(
        version=None, box_size=8, border=4,
        error_correction=ERROR_CORRECT_M
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = BytesIO()
    img.save(buf)
    return base64.b64encode(buf.getvalue()).decode()
