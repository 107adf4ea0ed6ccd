from app.services.content import (
    blob_key_for_inline_url, extract_image_urls, extract_tags, extract_video_urls,
    find_private_urls, is_blank, parse_attachment_url, parse_proxy_url,
    parse_standalone_image_url,
)


class TestExtractImageUrls:
    def test_nested_parentheses(self):
        assert extract_image_urls("![a](http://x.com/img(1).png)") == ["http://x.com/img(1).png"]

    def test_multiple_images_in_order(self):
        content = "![one](/a.png) text ![two](/b.png)"
        assert extract_image_urls(content) == ["/a.png", "/b.png"]

    def test_unterminated_and_empty_targets_are_skipped(self):
        assert extract_image_urls("![a](http://x.com/open") == []
        assert extract_image_urls("![a]() and ![b](/ok.png)") == ["/ok.png"]

    def test_target_does_not_cross_lines(self):
        assert extract_image_urls("![a](/broken\n) ![b](/fine.png)") == ["/fine.png"]

    def test_plain_links_are_not_images(self):
        assert extract_image_urls("[link](http://x.com)") == []


def test_extract_video_urls():
    content = "intro [tg-video](/api/v1/tg-media-proxy/abc_1) ![pic](/p.png)"
    assert extract_video_urls(content) == ["/api/v1/tg-media-proxy/abc_1"]


class TestExtractTags:
    def test_round_trip_example(self):
        assert extract_tags("Buy milk #todo #todo ```#not-a-tag``` http://x.com/#frag") == ["todo"]

    def test_lowercased_and_deduplicated_in_order(self):
        assert extract_tags("#Work then #home and #WORK") == ["work", "home"]

    def test_inline_code_and_html_ignored(self):
        assert extract_tags("`#code` <a href='#anchor'>x</a> #real") == ["real"]

    def test_unicode_and_dashes(self):
        assert extract_tags("#café #to-do #日本") == ["café", "to-do", "日本"]

    def test_no_tags(self):
        assert extract_tags("") == []


def test_private_url_parsers():
    assert parse_attachment_url("/api/v1/files/12/abc-def") == (12, "abc-def")
    assert parse_attachment_url("/api/v1/files/x/abc") is None
    assert parse_standalone_image_url("/api/v1/images/img-1") == "img-1"
    assert parse_proxy_url("/api/v1/tg-media-proxy/AgAD_x-1") == "AgAD_x-1"
    assert parse_proxy_url("https://example.com/tg-media-proxy/x") is None


def test_find_private_urls():
    content = "see ![a](/api/v1/files/3/f1) and ![b](/api/v1/images/i1) and https://x.com/y"
    assert [m.group(0) for m in find_private_urls(content)] == [
        "/api/v1/files/3/f1",
        "/api/v1/images/i1",
    ]


def test_find_private_urls_stops_before_sentence_period():
    content = "see /api/v1/files/1/abc. Then /api/v1/images/i1."
    assert [m.group(0) for m in find_private_urls(content)] == [
        "/api/v1/files/1/abc",
        "/api/v1/images/i1",
    ]


def test_blob_key_for_inline_url_only_claims_own_files():
    assert blob_key_for_inline_url(3, "/api/v1/files/3/f1") == "3/f1"
    assert blob_key_for_inline_url(3, "/api/v1/files/4/f1") is None
    assert blob_key_for_inline_url(3, "/api/v1/images/i1") == "uploads/i1"
    assert blob_key_for_inline_url(3, "https://example.com/a.png") is None


def test_is_blank():
    assert is_blank("  \n\t")
    assert is_blank(None)
    assert not is_blank(" x ")
