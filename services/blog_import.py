# services/blog_import.py
"""
WordPress export import into blog_posts

Images hosted on the WordPress uploads path are moved to R2 (or rewritten
onto an existing mirror) before the cleaned post body is stored.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import current_app

from core.database_models import BlogPost, db
from core.html_cleaner import (
    calculate_reading_time, clean_content, extract_image_urls, generate_excerpt,
    image_extension, is_wp_hosted_image, wp_url_to_r2,
)
from core.wordpress_xml import WpAuthor, WpPost, parse_authors, parse_posts
from services.r2_storage import R2Storage

logger = logging.getLogger(__name__)

META_TITLE_LIMIT = 60
META_DESCRIPTION_LIMIT = 155


def _parse_wp_date(value: str) -> Optional[datetime]:
    # Drafts exported before publishing carry an all-zero date
    if not value or value.startswith('0000'):
        return None
    try:
        return datetime.strptime(value.strip(), '%Y-%m-%d %H:%M:%S')
    except ValueError:
        logger.warning(f"Unparseable post date: {value}")
        return None


def _author_name(post: WpPost, authors: Dict[str, WpAuthor]) -> str:
    author = authors.get(post.author_login)
    return author.display_name if author and author.display_name else post.author_login


def meta_title(title: str) -> str:
    if len(title) > META_TITLE_LIMIT:
        return title[:META_TITLE_LIMIT - 3] + '...'
    return title


def preview(xml_content: str) -> Dict[str, Any]:
    authors = parse_authors(xml_content)
    posts = parse_posts(xml_content)
    logger.info(f"WordPress preview: {len(posts)} posts, {len(authors)} authors")
    return {
        'success': True,
        'postsFound': len(posts),
        'posts': [{
            'title': post.title,
            'slug': post.slug,
            'author': _author_name(post, authors),
            'categories': post.categories,
            'publishedAt': post.published_at,
            'hasContent': len(post.content) > 0,
            'contentLength': len(post.content),
            'imageCount': len(extract_image_urls(post.content)),
        } for post in posts],
    }


class BlogImporter:
    """Imports parsed posts one at a time, collecting per-post failures"""

    def __init__(self, storage: R2Storage = None, dry_run: bool = False):
        self._storage = storage
        self.dry_run = dry_run
        config = current_app.config
        self.fallback_image = config.get('BLOG_FALLBACK_IMAGE')
        self.upload_hosts = config.get('WORDPRESS_UPLOAD_HOSTS') or []
        self.mirror_url = config.get('WORDPRESS_R2_MIRROR_URL') or None
        self.results = {
            'total': 0,
            'imported': 0,
            'skipped': 0,
            'imagesMigrated': 0,
            'errors': [],
            'slugs': [],
        }

    @property
    def storage(self) -> R2Storage:
        if self._storage is None:
            self._storage = R2Storage()
        return self._storage

    def _migrate(self, url: str, object_key: str) -> Optional[str]:
        new_url = self.storage.download_and_upload(url, object_key)
        if new_url:
            self.results['imagesMigrated'] += 1
        return new_url

    def _image_map(self, post: WpPost) -> Dict[str, str]:
        url_map = {}
        for url in extract_image_urls(post.content):
            if 'r2.dev' in url or not is_wp_hosted_image(url, self.upload_hosts):
                continue

            mirrored = wp_url_to_r2(url, self.mirror_url)
            if mirrored != url:
                url_map[url] = mirrored
                continue

            if not self.dry_run:
                key = f"blog-images/{post.slug}/{uuid.uuid4().hex[:8]}.{image_extension(url)}"
                new_url = self._migrate(url, key)
                # A failed copy keeps the WordPress URL
                if new_url:
                    url_map[url] = new_url
        return url_map

    def _featured_image(self, post: WpPost, content: str) -> str:
        images = extract_image_urls(content)
        featured = images[0] if images else self.fallback_image
        if (not self.dry_run and featured and 'r2.dev' not in featured
                and is_wp_hosted_image(featured, self.upload_hosts)):
            new_url = self._migrate(featured, f"blog-images/{post.slug}/featured.{image_extension(featured)}")
            if new_url:
                featured = new_url
        return featured

    def build_record(self, post: WpPost, authors: Dict[str, WpAuthor]) -> Dict[str, Any]:
        content = clean_content(post.content, self._image_map(post))
        return {
            'slug': post.slug,
            'title': post.title,
            'content': content,
            'excerpt': post.excerpt or generate_excerpt(content),
            'featured_image': self._featured_image(post, content),
            'author_name': _author_name(post, authors),
            'published_at': _parse_wp_date(post.published_at),
            'categories': post.categories,
            'reading_time': calculate_reading_time(content),
            'meta_title': meta_title(post.title),
            'meta_description': (post.meta_description or generate_excerpt(content, META_DESCRIPTION_LIMIT))
            [:META_DESCRIPTION_LIMIT],
        }

    @staticmethod
    def upsert(record: Dict[str, Any]) -> BlogPost:
        post = BlogPost.query.filter_by(slug=record['slug']).first()
        if post is None:
            post = BlogPost(slug=record['slug'])
            db.session.add(post)
        for key, value in record.items():
            setattr(post, key, value)
        db.session.commit()
        return post

    def run(self, posts: List[WpPost], authors: Dict[str, WpAuthor]) -> Dict[str, Any]:
        self.results['total'] = len(posts)
        for post in posts:
            try:
                record = self.build_record(post, authors)
                if not self.dry_run:
                    self.upsert(record)
                self.results['slugs'].append(post.slug)
                self.results['imported'] += 1
            except Exception as e:
                db.session.rollback()
                logger.error(f"Import failed for {post.slug}: {e}")
                self.results['errors'].append(f"{post.slug}: {e}")
                self.results['skipped'] += 1

        logger.info(
            f"WordPress import done: imported={self.results['imported']}, "
            f"skipped={self.results['skipped']}, images={self.results['imagesMigrated']}"
        )
        return self.results


def import_posts(xml_content: str, dry_run: bool = False, storage: R2Storage = None) -> Dict[str, Any]:
    authors = parse_authors(xml_content)
    posts = parse_posts(xml_content)
    logger.info(f"WordPress import: {len(posts)} posts (dry run: {dry_run})")
    results = BlogImporter(storage=storage, dry_run=dry_run).run(posts, authors)
    return {'success': True, 'dryRun': dry_run, 'results': results}
