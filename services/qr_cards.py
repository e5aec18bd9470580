# services/qr_cards.py
import base64
import io
from dataclasses import dataclass
from typing import List
from urllib.parse import urlencode

import qrcode

from models import Section

# Style des cartes imprimées : gris foncé sur fond blanc (impression)
QR_DARK = "#44403c"
QR_LIGHT = "#ffffff"
QR_BORDER = 2
QR_BOX_SIZE = 8   # ~250 px pour un code version 2-3

@dataclass
class QrCard:
    section_id: int
    code: str
    url: str
    png: bytes

    @property
    def piece_number(self) -> int:
        return self.section_id + 1

    @property
    def data_url(self) -> str:
        return "data:image/png;base64," + base64.b64encode(self.png).decode("ascii")

def card_url(base_url: str, code: str) -> str:
    base = base_url.split("?", 1)[0]
    return f"{base}?{urlencode({'code': code})}"

def render_png(text: str) -> bytes:
    qr = qrcode.QRCode(border=QR_BORDER, box_size=QR_BOX_SIZE)
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(fill_color=QR_DARK, back_color=QR_LIGHT)
    bio = io.BytesIO()
    img.save(bio, format="PNG")
    return bio.getvalue()

def make_card(section: Section, base_url: str) -> QrCard:
    url = card_url(base_url, section.code)
    return QrCard(section_id=section.id, code=section.code, url=url, png=render_png(url))

def generate_shareable_artifacts(sections: List[Section], base_url: str) -> List[QrCard]:
    """One printable card per section; no effect on the game state."""
    return [make_card(s, base_url) for s in sections]
