"""Tests for contact extraction from HTML pages."""

import pytest

from pipelines.extractor import (
    ContactHit,
    canonicalize_social,
    deobfuscate,
    extract_contacts,
    is_contact_page,
    normalize_email,
    normalize_phone,
    score_confidence,
)

CONTACT_PAGE = """
<html>
  <head><title> Επικοινωνία - Acme </title><script>var x = "bot@script.gr";</script></head>
  <body>
    <p>Email us at info@acme.gr or call 210 123 4567.</p>
    <p>Sales: sales [at] acme [dot] gr</p>
    <a href="mailto:Owner@Acme.gr?subject=Hi">Owner</a>
    <a href="tel:+30 6912345678">Mobile</a>
    <a href="https://www.facebook.com/acmegr/">Facebook</a>
    <a href="https://www.facebook.com/sharer/sharer.php?u=x">Share</a>
    <a href="https://instagram.com/acme.gr">Instagram</a>
    <a href="/about">Who we are</a>
    <a href="/products">Products</a>
    <form><input type="text" name="n"><textarea name="msg"></textarea></form>
  </body>
</html>
"""


class TestNormalization:
    """Value normalization and junk filtering"""

    @pytest.mark.parametrize("raw,expected", [
        ("Info@Acme.GR", "info@acme.gr"),
        ("<info@acme.gr>.", "info@acme.gr"),
        ("info%40acme.gr", "info@acme.gr"),
        ("someone@example.com", None),
        ("errors@sentry-next.wixpress.com", None),
        ("info@mydomain.com.gr", "info@mydomain.com.gr"),
        ("hello@myemail.com", "hello@myemail.com"),
        ("logo@2x.png", None),
        ("not-an-email", None),
    ])
    def test_normalize_email(self, raw, expected):
        assert normalize_email(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("210 123 4567", "+302101234567"),
        ("+30 6912345678", "+306912345678"),
        ("0030-210-1234567", "+302101234567"),
        ("302101234567", "+302101234567"),
        ("12345", None),
    ])
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_deobfuscate(self):
        assert deobfuscate("sales [at] acme [dot] gr") == "sales@acme.gr"
        assert deobfuscate("write to sales at acme dot gr today") == "write to sales@acme.gr today"

    def test_social_canonicalization(self):
        assert canonicalize_social("https://m.facebook.com/acmegr?ref=1") == ("facebook", "https://www.facebook.com/acmegr")
        assert canonicalize_social("https://www.linkedin.com/company/acme/about") == ("linkedin", "https://www.linkedin.com/company/acme")
        assert canonicalize_social("https://x.com/acme") == ("twitter", "https://twitter.com/acme")
        assert canonicalize_social("https://www.facebook.com/sharer.php?u=1") is None
        assert canonicalize_social("https://acme.example/facebook") is None


class TestContactPageDetection:
    @pytest.mark.parametrize("url,anchor", [
        ("https://acme.example/contact", ""),
        ("https://acme.example/contact-us/", ""),
        ("https://acme.example/el/επικοινωνια", ""),
        ("https://acme.example/page?id=3", "Contact us"),
        ("https://acme.example/p/12", "Επικοινωνία"),
    ])
    def test_contact_pages(self, url, anchor):
        assert is_contact_page(url, anchor)

    def test_regular_page(self):
        assert not is_contact_page("https://acme.example/products", "Products")

    def test_confidence_by_page_type(self):
        assert score_confidence("https://acme.example/contact") == 0.9
        assert score_confidence("https://acme.example/") == 0.6
        assert score_confidence("https://acme.example/privacy") == 0.3
        assert score_confidence("https://acme.example/contact", obfuscated=True) == 1.0


class TestExtractContacts:
    """Full page extraction"""

    def test_extracts_emails_with_provenance(self):
        page = extract_contacts("https://acme.gr/contact", CONTACT_PAGE)
        values = [hit.value for hit in page.emails]

        assert values[0] == "owner@acme.gr"
        assert "info@acme.gr" in values
        assert "sales@acme.gr" in values
        assert "bot@script.gr" not in values
        assert all(hit.source_url == "https://acme.gr/contact" for hit in page.emails)
        assert all(hit.page_type == "contact" for hit in page.emails)

    def test_obfuscated_email_scores_higher(self):
        page = extract_contacts("https://acme.gr/about", CONTACT_PAGE)
        by_value = {hit.value: hit for hit in page.emails}
        assert by_value["info@acme.gr"].confidence == 0.7
        assert by_value["sales@acme.gr"].confidence == 0.8

    def test_context_is_captured(self):
        page = extract_contacts("https://acme.gr/contact", CONTACT_PAGE)
        info = next(hit for hit in page.emails if hit.value == "info@acme.gr")
        assert "Email us at" in info.context

    def test_extracts_phones(self):
        page = extract_contacts("https://acme.gr/contact", CONTACT_PAGE)
        values = [hit.value for hit in page.phones]
        assert values == ["+306912345678", "+302101234567"]

    def test_social_links_and_navigation(self):
        page = extract_contacts("https://acme.gr/contact", CONTACT_PAGE)
        assert page.social == {
            "facebook": "https://www.facebook.com/acmegr",
            "instagram": "https://www.instagram.com/acme.gr",
        }
        urls = [url for url, _ in page.links]
        assert "https://acme.gr/about" in urls
        assert "https://acme.gr/products" in urls
        assert page.contact_links == ["https://acme.gr/about"]

    def test_metadata(self):
        page = extract_contacts("https://acme.gr/contact", CONTACT_PAGE)
        assert page.title == "Επικοινωνία - Acme"
        assert page.has_contact_form
        assert page.page_type == "contact"

    def test_same_value_deduplicated_per_page(self):
        html = '<a href="mailto:info@acme.gr">info@acme.gr</a><p>info@acme.gr</p>'
        page = extract_contacts("https://acme.gr/", html)
        assert [hit.value for hit in page.emails] == ["info@acme.gr"]

    def test_empty_page(self):
        page = extract_contacts("https://acme.gr/", "")
        assert page.emails == [] and page.phones == [] and page.links == []
        assert page.page_type == "homepage"


class TestContactHit:
    def test_dict_round_trip_keeps_fields(self):
        hit = ContactHit(value="info@acme.gr", source_url="https://acme.gr/contact",
                         context="Email us", page_type="contact", confidence=0.9)
        assert ContactHit.from_dict(hit.to_dict()) == hit
