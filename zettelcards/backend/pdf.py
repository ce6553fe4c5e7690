from __future__ import annotations

import io
import re
from datetime import datetime
from html.parser import HTMLParser
from pathlib import Path
from typing import Any, Dict, List, Optional

from reportlab.lib.fonts import addMapping
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen import canvas
from reportlab.platypus import PageBreak, Paragraph, Preformatted, SimpleDocTemplate, Spacer

MARGIN = 18 * mm

_BLOCK_TAGS = {
    "p", "div", "section", "article", "header", "footer", "blockquote",
    "h1", "h2", "h3", "h4", "h5", "h6", "li", "td", "th", "pre",
}
_SKIP_TAGS = {"script", "style", "head", "noscript", "template"}
_BREAK_STYLE_RE = re.compile(r"(page-)?break-before\s*:\s*(always|page)", re.I)


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


class _HtmlBlockParser(HTMLParser):
    """Flattens card markup into a list of text blocks.

    Nested block elements each emit their own text; inline formatting is kept as
    reportlab paragraph markup.
    """

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.blocks: List[Dict[str, Any]] = []
        self.title = ""
        self.stack: List[str] = []
        self.cur = ""
        self.skip_depth = 0
        self.in_title = False
        self.in_pre = False
        self.list_stack: List[Dict[str, Any]] = []

    def _current_type(self) -> str:
        for tag in reversed(self.stack):
            if tag in _BLOCK_TAGS:
                return tag
        return "p"

    def _flush(self, tag: Optional[str] = None) -> None:
        text = self.cur if self.in_pre else self.cur.strip()
        self.cur = ""
        if not text or text in ("<br/>",):
            return
        t = tag or self._current_type()
        block: Dict[str, Any] = {"type": t, "text": text}
        if t == "li":
            bullet = "•"
            if self.list_stack and self.list_stack[-1]["type"] == "ol":
                bullet = f"{self.list_stack[-1]['index']}."
            block["bullet"] = bullet
        self.blocks.append(block)

    @staticmethod
    def _is_break(attrs) -> bool:
        d = dict(attrs)
        classes = (d.get("class") or "").split()
        if "page-break" in classes:
            return True
        return bool(_BREAK_STYLE_RE.search(d.get("style") or ""))

    def handle_starttag(self, tag, attrs):
        if tag == "title":
            self.in_title = True
            return
        if tag in _SKIP_TAGS:
            self.skip_depth += 1
            return
        if self.skip_depth:
            return
        if tag in ("ul", "ol"):
            self._flush()
            self.list_stack.append({"type": tag, "index": 0})
            return
        if tag in _BLOCK_TAGS:
            self._flush()
            if self._is_break(attrs) and self.blocks:
                self.blocks.append({"type": "break"})
            if tag == "li" and self.list_stack:
                self.list_stack[-1]["index"] += 1
            if tag == "pre":
                self.in_pre = True
            self.stack.append(tag)
            return
        if tag == "br":
            self.cur += "\n" if self.in_pre else "<br/>"
        elif tag in ("strong", "b"):
            self.cur += "<b>"
        elif tag in ("em", "i"):
            self.cur += "<i>"
        elif tag == "code" and not self.in_pre:
            self.cur += "<font face=\"Courier\">"

    def handle_endtag(self, tag):
        if tag == "title":
            self.in_title = False
            return
        if tag in _SKIP_TAGS:
            self.skip_depth = max(0, self.skip_depth - 1)
            return
        if self.skip_depth:
            return
        if tag in ("ul", "ol"):
            self._flush()
            if self.list_stack:
                self.list_stack.pop()
            return
        if tag in _BLOCK_TAGS:
            self._flush(tag if tag in self.stack else None)
            if tag in self.stack:
                while self.stack:
                    if self.stack.pop() == tag:
                        break
            if tag == "pre":
                self.in_pre = False
            return
        if tag in ("strong", "b"):
            self.cur += "</b>"
        elif tag in ("em", "i"):
            self.cur += "</i>"
        elif tag == "code" and not self.in_pre:
            self.cur += "</font>"

    def handle_data(self, data):
        if self.in_title:
            self.title += data
            return
        if self.skip_depth:
            return
        if self.in_pre:
            self.cur += data
        else:
            self.cur += _escape(re.sub(r"\s+", " ", data or ""))

    def close(self):
        super().close()
        self._flush()


def _pdf_wrap_lines(text: str, max_width: float, font_name: str, font_size: float) -> List[str]:
    # Basic word-wrap; preserves existing newlines
    lines_out = []
    for raw_line in (text or "").splitlines():
        if not raw_line:
            lines_out.append("")
            continue
        cur = ""
        for w in raw_line.split(" "):
            cand = (cur + " " + w) if cur else w
            if pdfmetrics.stringWidth(cand, font_name, font_size) <= max_width:
                cur = cand
                continue
            if cur:
                lines_out.append(cur)
            # if single word longer than width, hard-split
            chunk = ""
            for ch in w:
                if pdfmetrics.stringWidth(chunk + ch, font_name, font_size) <= max_width:
                    chunk += ch
                else:
                    if chunk:
                        lines_out.append(chunk)
                    chunk = ch
            cur = chunk
        if cur:
            lines_out.append(cur)
    return lines_out


# Unicode TTFs with Cyrillic coverage, tried in order when no font is configured.
SYSTEM_FONT_CANDIDATES = (
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/TTF/DejaVuSans.ttf",
    "/usr/share/fonts/dejavu-sans-fonts/DejaVuSans.ttf",
    "/usr/local/share/fonts/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
    "/usr/share/fonts/liberation-sans/LiberationSans-Regular.ttf",
    "/usr/share/fonts/truetype/noto/NotoSans-Regular.ttf",
    "/Library/Fonts/Arial Unicode.ttf",
    "/System/Library/Fonts/Supplemental/Arial Unicode.ttf",
    "C:/Windows/Fonts/arial.ttf",
)


def find_unicode_font(candidates=SYSTEM_FONT_CANDIDATES) -> Optional[str]:
    for candidate in candidates:
        if Path(candidate).is_file():
            return candidate
    return None


def register_font(font_path: Optional[str]) -> Optional[str]:
    """Registers a TTF (needed for Cyrillic card text) and returns its font name."""
    if not font_path:
        return None
    path = Path(font_path)
    if not path.is_file():
        return None
    name = path.stem.replace(" ", "")
    if name not in pdfmetrics.getRegisteredFontNames():
        pdfmetrics.registerFont(TTFont(name, str(path)))
        for bold in (0, 1):
            for italic in (0, 1):
                addMapping(name, bold, italic, name)
    return name


def _para(text: str, style, **kwargs) -> Paragraph:
    try:
        return Paragraph(text, style, **kwargs)
    except ValueError:
        # unbalanced inline markup, e.g. a <b> that spans block elements
        return Paragraph(re.sub(r"<[^>]+>", "", text), style, **kwargs)


def _html_to_flowables(blocks: List[Dict[str, Any]], font_name: Optional[str]) -> List[Any]:
    styles = getSampleStyleSheet()
    base: Dict[str, Any] = {"fontName": font_name} if font_name else {}
    h1 = ParagraphStyle("H1", parent=styles["Heading1"], fontSize=18, spaceAfter=8, **base)
    h2 = ParagraphStyle("H2", parent=styles["Heading2"], fontSize=15, spaceAfter=6, **base)
    h3 = ParagraphStyle("H3", parent=styles["Heading3"], fontSize=13, spaceAfter=6, **base)
    body = ParagraphStyle(
        "Body",
        parent=styles["BodyText"],
        fontSize=10.5,
        leading=13,
        splitLongWords=True,
        wordWrap="CJK",
        **base,
    )
    code_style = styles["Code"]
    max_width = A4[0] - (MARGIN * 2)

    flow: List[Any] = []
    for b in blocks:
        t = b.get("type")
        text = b.get("text", "")
        if t == "break":
            flow.append(PageBreak())
            continue
        if t == "h1":
            flow.append(_para(text, h1))
        elif t == "h2":
            flow.append(_para(text, h2))
        elif t == "h3":
            flow.append(_para(text, h3))
        elif t == "li":
            flow.append(_para(text, body, bulletText=b.get("bullet") or "•"))
        elif t == "pre":
            wrapped = "\n".join(_pdf_wrap_lines(text, max_width, code_style.fontName, code_style.fontSize))
            flow.append(Preformatted(wrapped, code_style))
        else:
            flow.append(_para(text, body))
        flow.append(Spacer(1, 6))

    if not flow:
        flow.append(Paragraph("", body))
    return flow


def _make_numbered_canvas(header_left: str, header_right: str, footer_tpl: str, font_name: str):
    class NumberedCanvas(canvas.Canvas):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self._saved_page_states = []

        def showPage(self):
            self._saved_page_states.append(dict(self.__dict__))
            self._startPage()

        def save(self):
            num_pages = len(self._saved_page_states)
            for state in self._saved_page_states:
                self.__dict__.update(state)
                self._draw_header_footer(num_pages)
                super().showPage()
            super().save()

        def _draw_header_footer(self, page_count: int):
            width, height = self._pagesize
            self.setFont(font_name, 9)
            if header_left:
                self.drawString(MARGIN, height - MARGIN + 6, header_left)
            if header_right:
                self.drawRightString(width - MARGIN, height - MARGIN + 6, header_right)
            footer_text = footer_tpl.format(page=self._pageNumber, pages=page_count)
            self.drawCentredString(width / 2, MARGIN - 12, footer_text)

    return NumberedCanvas


def html_to_pdf(html: str, title: str = "", font_path: Optional[str] = None) -> bytes:
    """Render card HTML to PDF bytes.

    Without a usable ``font_path`` the first installed system Unicode font is used; the
    built-in Helvetica is the last resort and has no Cyrillic glyphs.
    """
    parser = _HtmlBlockParser()
    parser.feed(html or "")
    parser.close()

    font_name = register_font(font_path) or register_font(find_unicode_font())
    display = (title or parser.title or "Zettelkasten").strip()

    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        leftMargin=MARGIN,
        rightMargin=MARGIN,
        topMargin=24 * mm,
        bottomMargin=20 * mm,
        title=display,
    )
    canvas_maker = _make_numbered_canvas(
        display,
        datetime.now().date().isoformat(),
        "Page {page} of {pages}",
        font_name or "Helvetica",
    )
    doc.build(_html_to_flowables(parser.blocks, font_name), canvasmaker=canvas_maker)
    return buf.getvalue()
