"""
Content scanning for note bodies.

Extracts inline media references and hashtags from markdown-like text, and
knows the shape of the private resource URLs the API hands out
(attachments, standalone images, external media proxies).
"""

import re
from typing import List, Optional, Pattern, Tuple

from app.core.blob_store import attachment_key, standalone_image_key
from app.core.config import settings

_API = re.escape(settings.API_V1_STR)

IMAGE_OPEN_RE = re.compile(r"!\[[^\n]*?\]\(")
VIDEO_OPEN_RE = re.compile(r"\[tg-video\]\(")

FENCED_CODE_RE = re.compile(r"```.*?```", re.DOTALL)
INLINE_CODE_RE = re.compile(r"`[^`]*`")
HTML_TAG_RE = re.compile(r"<[^>]*>")
URL_RE = re.compile(r"(https?://[^\s\"']*[^\s\"'.?,!])")
TAG_RE = re.compile(r"#([\w-]+)")

ATTACHMENT_URL_RE = re.compile(rf"^{_API}/files/(\d+)/([A-Za-z0-9-]+)$")
STANDALONE_IMAGE_URL_RE = re.compile(rf"^{_API}/images/([A-Za-z0-9-]+)$")
PROXY_URL_RE = re.compile(rf"^{_API}/tg-media-proxy/([A-Za-z0-9_-]+)$")
PRIVATE_URL_RE = re.compile(rf"({_API}/(?:files|images|tg-media-proxy)/[A-Za-z0-9/_.-]*[A-Za-z0-9/_-])")


def _closing_paren(text: str, start: int) -> Optional[int]:
    # URLs may contain balanced parentheses, e.g. img(1).png
    depth = 1
    for i in range(start, len(text)):
        ch = text[i]
        if ch == "\n":
            return None
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
    return None


def _link_targets(opener: Pattern, content: str) -> List[str]:
    urls = []
    pos = 0
    while True:
        match = opener.search(content, pos)
        if match is None:
            return urls
        end = _closing_paren(content, match.end())
        if end is None:
            pos = match.end()
            continue
        url = content[match.end():end].strip()
        if url:
            urls.append(url)
        pos = end + 1


def extract_image_urls(content: str) -> List[str]:
    """URLs of every markdown image ``![alt](url)`` in order of appearance"""
    return _link_targets(IMAGE_OPEN_RE, content or "")


def extract_video_urls(content: str) -> List[str]:
    """URLs of every ``[tg-video](url)`` placeholder"""
    return _link_targets(VIDEO_OPEN_RE, content or "")


def extract_tags(content: str) -> List[str]:
    """Lower-cased, de-duplicated ``#tags`` outside code and URLs.

    Code is stripped first, then the text is split on URLs so that a
    fragment such as ``http://x.com/#frag`` never reads as a tag.
    """
    text = FENCED_CODE_RE.sub("", content or "")
    text = INLINE_CODE_RE.sub("", text)
    text = HTML_TAG_RE.sub("", text)

    tags: List[str] = []
    # re.split with a capturing group alternates text, url, text, ...
    for index, segment in enumerate(URL_RE.split(text)):
        if index % 2:
            continue
        for name in TAG_RE.findall(segment):
            name = name.lower()
            if name not in tags:
                tags.append(name)
    return tags


def attachment_url(note_id: int, file_id: str) -> str:
    return f"{settings.API_V1_STR}/files/{note_id}/{file_id}"


def standalone_image_url(image_id: str) -> str:
    return f"{settings.API_V1_STR}/images/{image_id}"


def proxy_url(proxy_id: str) -> str:
    return f"{settings.API_V1_STR}/tg-media-proxy/{proxy_id}"


def public_file_url(public_file_id: str) -> str:
    return f"{settings.API_V1_STR}/public/file/{public_file_id}"


def parse_attachment_url(url: str) -> Optional[Tuple[int, str]]:
    match = ATTACHMENT_URL_RE.match(url)
    if match is None:
        return None
    return int(match.group(1)), match.group(2)


def parse_standalone_image_url(url: str) -> Optional[str]:
    match = STANDALONE_IMAGE_URL_RE.match(url)
    return match.group(1) if match else None


def parse_proxy_url(url: str) -> Optional[str]:
    match = PROXY_URL_RE.match(url)
    return match.group(1) if match else None


def find_private_urls(content: str) -> List[re.Match]:
    return list(PRIVATE_URL_RE.finditer(content or ""))


def blob_key_for_inline_url(note_id: int, url: str) -> Optional[str]:
    """Blob key owned by an inline media URL of ``note_id``, if any"""
    image_id = parse_standalone_image_url(url)
    if image_id:
        return standalone_image_key(image_id)
    parsed = parse_attachment_url(url)
    if parsed and parsed[0] == note_id:
        return attachment_key(note_id, parsed[1])
    return None


def is_blank(content: Optional[str]) -> bool:
    return not (content or "").strip()
