# services/sitemap.py
"""
sitemaps.org urlset for the public site
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from jinja2 import Environment

from core.database_models import BlogPost, Course, MediaArtist

logger = logging.getLogger(__name__)

STATIC_ROUTES = [
    ('/', 1.0),
    ('/courses', 0.9),
    ('/listen', 0.8),
    ('/membership', 0.8),
    ('/auth', 0.3),
]

SITEMAP_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
{% for entry in entries %}
  <url>
    <loc>{{ host ~ entry.path }}</loc>
    <lastmod>{{ entry.lastmod.strftime('%Y-%m-%d') if entry.lastmod else today }}</lastmod>
    <changefreq>{{ entry.changefreq }}</changefreq>
    <priority>{{ '%.1f' | format(entry.priority) }}</priority>
  </url>
{% endfor %}
</urlset>"""

_template = Environment(autoescape=True, trim_blocks=True).from_string(SITEMAP_TEMPLATE)


@dataclass
class SitemapEntry:
    path: str
    priority: float
    lastmod: Optional[datetime] = None
    changefreq: str = 'weekly'


def collect_entries() -> List[SitemapEntry]:
    entries = [SitemapEntry(path, priority) for path, priority in STATIC_ROUTES]

    courses = Course.query.filter(Course.is_published.is_(True), Course.slug.isnot(None)).all()
    entries.extend(SitemapEntry(f"/course/{c.slug}", 0.8, c.updated_at) for c in courses)

    artists = MediaArtist.query.filter(MediaArtist.slug.isnot(None)).all()
    entries.extend(SitemapEntry(f"/artist/{a.slug}", 0.7, a.updated_at) for a in artists)

    posts = BlogPost.query.filter(BlogPost.is_published.is_(True)).all()
    entries.extend(SitemapEntry(f"/blog/{p.slug}", 0.7, p.updated_at or p.published_at) for p in posts)

    logger.info(f"Sitemap: {len(courses)} courses, {len(artists)} artists, {len(posts)} posts")
    return entries


def render_sitemap(host: str, entries: Iterable[SitemapEntry] = None, today: str = None) -> str:
    entries = collect_entries() if entries is None else entries
    today = today or datetime.utcnow().strftime('%Y-%m-%d')
    return _template.render(entries=entries, host=host.rstrip('/'), today=today)
