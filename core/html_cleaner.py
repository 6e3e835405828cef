# core/html_cleaner.py
"""
Clean-up of WordPress post bodies before they are stored as blog posts
"""

import math
import re
from typing import Dict, List, Optional
from urllib.parse import urlparse

import bleach
from bleach.css_sanitizer import CSSSanitizer
from bs4 import BeautifulSoup

WORDS_PER_MINUTE = 200

BLOG_SAFE_TAGS = [
    'p', 'br', 'strong', 'em', 'b', 'i', 'u', 's', 'sub', 'sup', 'mark',
    'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
    'ul', 'ol', 'li', 'dl', 'dt', 'dd',
    'a', 'img', 'figure', 'figcaption', 'picture', 'source',
    'table', 'thead', 'tbody', 'tfoot', 'tr', 'td', 'th', 'caption',
    'div', 'span', 'hr', 'blockquote', 'cite', 'pre', 'code',
    'iframe', 'audio', 'video',
]

BLOG_SAFE_ATTRIBUTES = {
    '*': ['class', 'title'],
    'a': ['href', 'title', 'rel', 'target'],
    'img': ['src', 'alt', 'width', 'height', 'title', 'loading'],
    'source': ['src', 'srcset', 'type'],
    'iframe': ['src', 'width', 'height', 'allow', 'allowfullscreen', 'frameborder', 'title'],
    'audio': ['src', 'controls'],
    'video': ['src', 'controls', 'poster', 'width', 'height'],
    'td': ['colspan', 'rowspan'],
    'th': ['colspan', 'rowspan'],
}

SHORTCODE_PATTERN = re.compile(r'\[/?[a-zA-Z_][\w-]*(?:\s[^\]]*)?\]')
BLOCK_COMMENT_PATTERN = re.compile(r'<!--\s*/?wp:[\s\S]*?-->')
IMAGE_EXTENSION_PATTERN = re.compile(r'\.(jpg|jpeg|png|gif|webp)', re.IGNORECASE)
SIZE_SUFFIX_PATTERN = re.compile(r'-\d+x\d+(?=\.(?:jpg|jpeg|png|gif|webp)$)', re.IGNORECASE)

_cleaner = bleach.Cleaner(
    tags=BLOG_SAFE_TAGS,
    attributes=BLOG_SAFE_ATTRIBUTES,
    protocols=['http', 'https', 'mailto'],
    css_sanitizer=CSSSanitizer(),
    strip=True,
    strip_comments=True,
)


def extract_image_urls(html_content: str) -> List[str]:
    """Image sources in document order, without duplicates"""
    if not html_content:
        return []
    soup = BeautifulSoup(html_content, 'html.parser')
    urls = []
    for img in soup.find_all('img', src=True):
        src = img['src'].strip()
        if src and src not in urls:
            urls.append(src)
    return urls


def image_extension(url: str) -> str:
    match = IMAGE_EXTENSION_PATTERN.search(url)
    return match.group(1).lower() if match else 'jpg'


def is_wp_hosted_image(url: str, upload_hosts: List[str] = None) -> bool:
    parsed = urlparse(url)
    if '/wp-content/uploads/' not in parsed.path:
        return False
    if not upload_hosts:
        return True
    host = parsed.netloc.lower()
    return any(host == h or host.endswith('.' + h) for h in upload_hosts)


def wp_url_to_r2(url: str, mirror_base_url: Optional[str]) -> str:
    """
    Rewrite an uploads URL onto a bucket that already mirrors wp-content/uploads

    Returns the URL unchanged when no mirror is configured or the URL is not
    an uploads URL. Resized variants (``photo-300x200.jpg``) map to the
    original file.
    """
    if not mirror_base_url:
        return url
    parsed = urlparse(url)
    marker = '/wp-content/uploads/'
    if marker not in parsed.path:
        return url
    relative = parsed.path.split(marker, 1)[1]
    relative = SIZE_SUFFIX_PATTERN.sub('', relative)
    return f"{mirror_base_url.rstrip('/')}/{relative}"


def clean_content(html_content: str, url_map: Dict[str, str] = None) -> str:
    """
    Strip WordPress artefacts and unsafe markup from a post body

    Removes block-editor comments, shortcodes and empty paragraphs, wraps
    bare text blocks in paragraphs, and rewrites image URLs found in
    ``url_map``.
    """
    if not html_content:
        return ''

    content = BLOCK_COMMENT_PATTERN.sub('', html_content)
    content = SHORTCODE_PATTERN.sub('', content)

    # Classic-editor posts separate paragraphs with blank lines instead of <p>
    if '<p' not in content:
        blocks = [b.strip() for b in re.split(r'\n\s*\n', content) if b.strip()]
        content = ''.join(f'<p>{b}</p>' for b in blocks)

    soup = BeautifulSoup(content, 'html.parser')

    if url_map:
        for img in soup.find_all('img', src=True):
            original = img['src'].strip()
            if original in url_map:
                img['src'] = url_map[original]
            if img.has_attr('srcset'):
                del img['srcset']
        for link in soup.find_all('a', href=True):
            if link['href'] in url_map:
                link['href'] = url_map[link['href']]

    for img in soup.find_all('img'):
        img['loading'] = 'lazy'

    for p in soup.find_all('p'):
        if not p.get_text(strip=True) and not p.find(['img', 'iframe', 'video', 'audio']):
            p.decompose()

    cleaned = _cleaner.clean(str(soup))
    cleaned = re.sub(r'\n{3,}', '\n\n', cleaned)
    return cleaned.strip()


def _plain_text(html_content: str) -> str:
    text = BeautifulSoup(html_content or '', 'html.parser').get_text(' ')
    return re.sub(r'\s+', ' ', text).strip()


def calculate_reading_time(html_content: str) -> int:
    """Minutes to read, never less than one"""
    words = len(_plain_text(html_content).split())
    return max(1, math.ceil(words / WORDS_PER_MINUTE))


def generate_excerpt(html_content: str, length: int = 160) -> str:
    text = _plain_text(html_content)
    if len(text) <= length:
        return text
    cut = text[:length - 3].rsplit(' ', 1)[0]
    return cut.rstrip(',;:.') + '...'
