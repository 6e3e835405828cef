# core/wordpress_xml.py
"""
WordPress eXtended RSS (WXR) export parsing
"""

import html
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.errors import BadRequestError

logger = logging.getLogger(__name__)

WP_NAMESPACE_MARKER = 'wordpress.org/export/'
EXCERPT_NAMESPACE_MARKER = '/excerpt/'
CONTENT_NAMESPACE_MARKER = 'purl.org/rss/1.0/modules/content'
DC_NAMESPACE_MARKER = 'purl.org/dc/elements'


@dataclass
class WpAuthor:
    login: str
    display_name: str


@dataclass
class WpPost:
    title: str
    slug: str
    content: str = ''
    excerpt: str = ''
    published_at: str = ''
    author_login: str = ''
    categories: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    thumbnail_id: Optional[str] = None
    post_id: str = ''
    meta_description: Optional[str] = None


def _split_tag(tag: str):
    if tag.startswith('{'):
        namespace, local = tag[1:].split('}', 1)
        return namespace, local
    return '', tag


def _namespace_kind(namespace: str) -> str:
    if EXCERPT_NAMESPACE_MARKER in namespace:
        return 'excerpt'
    if WP_NAMESPACE_MARKER in namespace:
        return 'wp'
    if CONTENT_NAMESPACE_MARKER in namespace:
        return 'content'
    if DC_NAMESPACE_MARKER in namespace:
        return 'dc'
    return ''


def _children(element: ET.Element, kind: str, local: str) -> List[ET.Element]:
    matches = []
    for child in element:
        namespace, name = _split_tag(child.tag)
        if name == local and _namespace_kind(namespace) == kind:
            matches.append(child)
    return matches


def _text(element: ET.Element, kind: str, local: str) -> str:
    found = _children(element, kind, local)
    if not found or found[0].text is None:
        return ''
    return found[0].text


def decode_entities(text: str) -> str:
    return html.unescape(text)


def _parse_root(xml_content: str) -> ET.Element:
    try:
        root = ET.fromstring(xml_content.strip().encode('utf-8'))
    except ET.ParseError as e:
        logger.warning(f"Rejected malformed WordPress export: {e}")
        raise BadRequestError(f"Invalid WordPress export XML: {e}")

    channel = root.find('channel')
    if channel is None:
        raise BadRequestError("Invalid WordPress export XML: missing <channel>")
    return channel


def parse_authors(xml_content: str) -> Dict[str, WpAuthor]:
    """Parse the <wp:author> declarations, keyed by login"""
    channel = _parse_root(xml_content)
    authors = {}
    for block in _children(channel, 'wp', 'author'):
        login = _text(block, 'wp', 'author_login').strip()
        display_name = _text(block, 'wp', 'author_display_name').strip()
        if login and display_name:
            authors[login] = WpAuthor(login=login, display_name=display_name)
    return authors


def _meta_value(item: ET.Element, key: str) -> Optional[str]:
    for meta in _children(item, 'wp', 'postmeta'):
        if _text(meta, 'wp', 'meta_key').strip() == key:
            return _text(meta, 'wp', 'meta_value')
    return None


def _terms(item: ET.Element, domain: str) -> List[str]:
    terms = []
    for category in item.findall('category'):
        if category.get('domain') != domain:
            continue
        term = (category.text or '').strip()
        if term and term not in terms:
            terms.append(term)
    return terms


def parse_posts(xml_content: str) -> List[WpPost]:
    """
    Parse the published blog posts of an export

    Pages, attachments, drafts and items without a title or slug are skipped.
    """
    channel = _parse_root(xml_content)
    posts = []

    for item in channel.findall('item'):
        if _text(item, 'wp', 'post_type').strip() != 'post':
            continue
        if _text(item, 'wp', 'status').strip() != 'publish':
            continue

        title = decode_entities(item.findtext('title') or '').strip()
        if not title:
            continue

        slug = _text(item, 'wp', 'post_name').strip()
        if not slug:
            continue

        thumbnail_id = (_meta_value(item, '_thumbnail_id') or '').strip()
        meta_description = _meta_value(item, 'rank_math_description')

        posts.append(WpPost(
            title=title,
            slug=slug,
            content=_text(item, 'content', 'encoded'),
            excerpt=_text(item, 'excerpt', 'encoded').strip(),
            published_at=_text(item, 'wp', 'post_date_gmt').strip(),
            author_login=_text(item, 'dc', 'creator').strip(),
            categories=_terms(item, 'category'),
            tags=_terms(item, 'post_tag'),
            thumbnail_id=thumbnail_id if thumbnail_id.isdigit() else None,
            post_id=_text(item, 'wp', 'post_id').strip(),
            meta_description=decode_entities(meta_description.strip()) if meta_description else None,
        ))

    logger.info(f"Parsed {len(posts)} published posts from WordPress export")
    return posts
