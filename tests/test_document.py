import io
import zipfile

import pytest

from modules.verification.config import VerificationConfig
from modules.verification.document import DocumentTextExtractor, collapse_whitespace, decode_document, html_to_text


def build_pdf(text):
    """生成只有一页文本的最小 PDF（xref 偏移在运行时计算）"""
    stream = f"BT /F1 24 Tf 72 700 Td ({text}) Tj ET".encode("latin-1")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
        b"/Resources << /Font << /F1 5 0 R >> >> /Contents 4 0 R >>",
        b"<< /Length " + str(len(stream)).encode() + b" >>\nstream\n" + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]

    out = io.BytesIO()
    out.write(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(out.tell())
        out.write(f"{number} 0 obj\n".encode() + body + b"\nendobj\n")

    xref_offset = out.tell()
    out.write(f"xref\n0 {len(objects) + 1}\n".encode())
    out.write(b"0000000000 65535 f \n")
    for offset in offsets:
        out.write(f"{offset:010d} 00000 n \n".encode())
    out.write(f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_offset}\n%%EOF\n".encode())
    return out.getvalue()


CONTAINER_XML = """<?xml version="1.0" encoding="utf-8"?>
<container xmlns="urn:oasis:names:tc:opendocument:xmlns:container" version="1.0">
  <rootfiles>
    <rootfile media-type="application/oebps-package+xml" full-path="OEBPS/content.opf"/>
  </rootfiles>
</container>
"""

PACKAGE_OPF = """<?xml version="1.0" encoding="utf-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="book-id">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    <dc:identifier id="book-id">urn:test:book</dc:identifier>
    <dc:title>Test Book</dc:title>
  </metadata>
  <manifest>{items}</manifest>
  <spine>{itemrefs}</spine>
</package>
"""


def build_epub(chapters, spine=None):
    """chapters 为 (OEBPS 内文件名, 内容)；spine 为阅读顺序的文件名，默认与 chapters 相同"""
    ids = {name: f"item{index}" for index, (name, _) in enumerate(chapters)}
    items = "".join(
        f'<item id="{ids[name]}" href="{name}" media-type="application/xhtml+xml"/>' for name, _ in chapters
    )
    order = [name for name, _ in chapters] if spine is None else spine
    itemrefs = "".join(f'<itemref idref="{ids[name]}"/>' for name in order)

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("mimetype", "application/epub+zip")
        archive.writestr("META-INF/container.xml", CONTAINER_XML)
        archive.writestr("META-INF/notes.xhtml", "<html><body>Hidden metadata text</body></html>")
        archive.writestr("OEBPS/content.opf", PACKAGE_OPF.format(items=items, itemrefs=itemrefs))
        for name, content in chapters:
            archive.writestr(f"OEBPS/{name}", content)
    return buffer.getvalue()


@pytest.fixture
def extractor():
    return DocumentTextExtractor(VerificationConfig())


class TestEpub:
    def test_strips_markup_scripts_and_styles(self, extractor):
        epub = build_epub([
            ("ch1.xhtml",
             "<html><head><style>p { color: red; }</style><script>alert('x')</script></head>"
             "<body><h1>Chapter  One</h1>\n<p>Amazing   grace</p></body></html>"),
        ])

        text = extractor.extract_text(epub, "application/epub+zip")

        assert text == "Chapter One Amazing grace"

    def test_limits_documents(self, extractor):
        chapters = [(f"ch{i}.xhtml", f"<p>part{i}</p>") for i in range(1, 8)]
        text = extractor.extract_text(build_epub(chapters), "application/epub+zip")

        assert "Hidden metadata" not in text
        assert text == "part1 part2 part3 part4 part5"

    def test_follows_spine_order(self, extractor):
        chapters = [("a.xhtml", "<p>epilogue</p>"), ("b.xhtml", "<p>prologue</p>"), ("c.xhtml", "<p>body</p>")]
        epub = build_epub(chapters, spine=["b.xhtml", "c.xhtml", "a.xhtml"])

        assert extractor.extract_text(epub, "application/epub+zip") == "prologue body epilogue"

    def test_empty_spine_uses_manifest(self, extractor):
        epub = build_epub([("a.xhtml", "<p>first</p>"), ("b.xhtml", "<p>second</p>")], spine=[])

        assert extractor.extract_text(epub, "application/epub+zip") == "first second"

    def test_non_utf8_document(self, extractor):
        markup = "<p>Louange à Dieu, très élevé et très saint</p>".encode("latin-1")
        text = extractor.extract_text(build_epub([("ch1.xhtml", markup)]), "application/epub+zip")

        assert "Louange" in text
        assert "Dieu" in text

    def test_truncates_to_cap(self, extractor):
        epub = build_epub([("ch.xhtml", "<p>" + "word " * 5000 + "</p>")])

        assert len(extractor.extract_text(epub, "application/epub+zip")) == 10000
        assert len(extractor.extract_text(epub, "application/epub+zip", max_chars=5000)) == 5000

    def test_zip_without_package_returns_empty(self, extractor):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("OEBPS/ch1.xhtml", "<p>orphan</p>")

        assert extractor.extract_text(buffer.getvalue(), "application/epub+zip") == ""


class TestPdf:
    def test_extracts_page_text(self, extractor):
        text = extractor.extract_text(build_pdf("Hello Gospel World"), "application/pdf")
        assert "Hello Gospel World" in text

    def test_extraction_is_idempotent(self, extractor):
        pdf = build_pdf("Blessed are the peacemakers")
        assert extractor.extract_text(pdf, "application/pdf") == extractor.extract_text(pdf, "application/pdf")


class TestFailures:
    @pytest.mark.parametrize("mime_type", ["application/pdf", "application/epub+zip"])
    def test_garbage_input_returns_empty(self, extractor, mime_type):
        assert extractor.extract_text(b"\x00\x01 not a document", mime_type) == ""

    def test_unsupported_type_returns_empty(self, extractor):
        assert extractor.extract_text(b"plain text", "text/plain") == ""

    def test_empty_buffer_returns_empty(self, extractor):
        assert extractor.extract_text(b"", "application/pdf") == ""


def test_helpers():
    assert collapse_whitespace("  a \n\t b  ") == "a b"
    assert decode_document("héllo".encode("utf-8")) == "héllo"
    assert html_to_text("<div>a<script>b</script></div>").strip() == "a"
