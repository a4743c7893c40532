# Local PDF production using reportlab + pypdf.
# render_html understands the small HTML subset the pipeline emits: block text,
# positioned signature <img> tags (data-page/x/y/w/h) and an audit <footer>.

from html.parser import HTMLParser
from io import BytesIO

from pypdf import PdfReader, PdfWriter
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

from .utils import b64png_to_bytes

_BLOCK_TAGS = {"p", "div", "br", "h1", "h2", "h3", "h4", "li", "tr", "section", "article", "table"}
_SKIP_TAGS = {"script", "style", "head", "title"}
MARGIN = 72
LINE_HEIGHT = 14
FOOTER_FONT_SIZE = 7


class _HtmlFlattener(HTMLParser):
    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.lines = []
        self.images = []
        self.footer = []
        self._buf = []
        self._skip = 0
        self._in_footer = 0

    def _flush(self):
        text = " ".join("".join(self._buf).split())
        self._buf = []
        if text:
            (self.footer if self._in_footer else self.lines).append(text)

    def handle_starttag(self, tag, attrs):
        attrs = dict(attrs)
        if tag in _SKIP_TAGS:
            self._skip += 1
        elif tag == "footer":
            self._flush()
            self._in_footer += 1
        elif tag == "img" and attrs.get("data-page"):
            self.images.append({
                "page": int(attrs.get("data-page") or 1),
                "x": float(attrs.get("data-x") or 0),
                "y": float(attrs.get("data-y") or 0),
                "w": float(attrs.get("data-w") or 180),
                "h": float(attrs.get("data-h") or 80),
                "src": attrs.get("src") or "",
            })
        elif tag in _BLOCK_TAGS:
            self._flush()

    def handle_endtag(self, tag):
        if tag in _SKIP_TAGS:
            self._skip = max(0, self._skip - 1)
        elif tag == "footer":
            self._flush()
            self._in_footer = max(0, self._in_footer - 1)
        elif tag in _BLOCK_TAGS:
            self._flush()

    def handle_data(self, data):
        if not self._skip:
            self._buf.append(data)

    def close(self):
        super().close()
        self._flush()


def _draw_footer(c, footer_lines, width):
    if not footer_lines:
        return
    c.setFont("Helvetica", FOOTER_FONT_SIZE)
    y = 24 + (len(footer_lines) - 1) * 9
    for line in footer_lines:
        c.drawString(MARGIN, y, line[:160])
        y -= 9


def _render_text_pages(lines, footer_lines) -> bytes:
    buf = BytesIO()
    width, height = letter
    c = canvas.Canvas(buf, pagesize=letter)
    c.setFont("Helvetica", 10)
    y = height - MARGIN
    for line in lines or [""]:
        for chunk in simpleSplit(line, "Helvetica", 10, width - 2 * MARGIN) or [""]:
            if y < MARGIN:
                _draw_footer(c, footer_lines, width)
                c.showPage()
                c.setFont("Helvetica", 10)
                y = height - MARGIN
            c.drawString(MARGIN, y, chunk)
            y -= LINE_HEIGHT
        y -= 4
    _draw_footer(c, footer_lines, width)
    c.showPage()
    c.save()
    return buf.getvalue()


def _overlay_page(width, height, draw_ops):
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    for op in draw_ops:
        png = ImageReader(BytesIO(op["png"]))
        c.drawImage(png, op["x"], op["y"], width=op["w"], height=op["h"], mask='auto')
    c.showPage(); c.save()
    return buf.getvalue()


def stamp_images(pdf_bytes: bytes, images: list) -> bytes:
    reader = PdfReader(BytesIO(pdf_bytes))
    writer = PdfWriter()
    for p in reader.pages:
        writer.add_page(p)
    num_pages = len(reader.pages)
    draw_map = {}
    for img in images:
        p = max(0, min(num_pages - 1, int(img.get("page", 1)) - 1))
        draw_map.setdefault(p, []).append({
            "x": img["x"], "y": img["y"], "w": img["w"], "h": img["h"],
            "png": b64png_to_bytes(img["src"]),
        })
    for pidx, ops in draw_map.items():
        page = reader.pages[pidx]
        w = float(page.mediabox.width); h = float(page.mediabox.height)
        overlay_reader = PdfReader(BytesIO(_overlay_page(w, h, ops)))
        writer.pages[pidx].merge_page(overlay_reader.pages[0])
    out = BytesIO(); writer.write(out)
    return out.getvalue()


def render_html(html: str) -> bytes:
    parser = _HtmlFlattener()
    parser.feed(html or "")
    parser.close()
    pdf = _render_text_pages(parser.lines, parser.footer)
    if parser.images:
        pdf = stamp_images(pdf, parser.images)
    return pdf


def render_certificate(info: dict) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.setFont("Helvetica-Bold", 14)
    c.drawString(72, 750, "Certificate of Completion")
    c.setFont("Helvetica", 10)
    y = 720
    for k, v in info.items():
        values = v if isinstance(v, list) else [v]
        for item in values:
            txt = f"{k}: {item}"
            c.drawString(72, y, txt[:95])
            y -= 14
            if y < 72:
                c.showPage(); c.setFont("Helvetica", 10); y = 750
    c.showPage(); c.save()
    return buf.getvalue()


def append_certificate(pdf_bytes: bytes, info: dict) -> bytes:
    writer = PdfWriter()
    for p in PdfReader(BytesIO(pdf_bytes)).pages:
        writer.add_page(p)
    for p in PdfReader(BytesIO(render_certificate(info))).pages:
        writer.add_page(p)
    out = BytesIO(); writer.write(out)
    return out.getvalue()
