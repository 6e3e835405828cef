# core/template_engine.py
"""
Template rendering for campaign and sequence emails

Campaign and sequence bodies are authored in the admin UI with
``{{first_name}}``-style placeholders. Only placeholders with a known value
are replaced; anything else, including stray braces, is left as written.
Substituted values are HTML-escaped in the HTML part.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Set

import premailer
from bs4 import BeautifulSoup
from markupsafe import escape

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r'\{\{\s*(\w+)\s*\}\}')


@dataclass
class RenderedEmail:
    """Result of rendering one message for one recipient"""
    subject: str
    html: str
    text: str
    variables_missing: Set[str] = field(default_factory=set)


class EmailTemplateEngine:
    """
    Renders subject, HTML and plain-text parts of an email
    """

    def __init__(self, inline_css: bool = True):
        self.inline_css = inline_css

    def substitute(self, template_content: str, variables: Dict[str, Any], html: bool = False) -> str:
        """Replace known placeholders in a single template string"""
        if not template_content:
            return ''

        def replace(match):
            name = match.group(1)
            if name not in variables:
                return match.group(0)
            value = variables[name]
            value = '' if value is None else str(value)
            return str(escape(value)) if html else value

        return PLACEHOLDER_PATTERN.sub(replace, template_content)

    def render(self,
               subject: str,
               body_html: str,
               variables: Dict[str, Any],
               body_text: str = None) -> RenderedEmail:
        """
        Render a complete message

        Args:
            subject: Subject template
            body_html: HTML body template
            variables: Placeholder values for this recipient
            body_text: Optional plain-text template; derived from the HTML when absent

        Returns:
            RenderedEmail with all three parts
        """
        missing = self.missing_variables(body_html, variables)
        if missing:
            logger.debug(f"Template placeholders without values: {sorted(missing)}")

        rendered_html = self.substitute(body_html, variables, html=True)

        if self.inline_css and '<style' in rendered_html:
            rendered_html = self._inline_css(rendered_html)

        if body_text:
            text = self.substitute(body_text, variables)
        else:
            text = html_to_text(rendered_html)

        return RenderedEmail(
            subject=self.substitute(subject, variables),
            html=rendered_html,
            text=text,
            variables_missing=missing
        )

    @staticmethod
    def missing_variables(template_content: str, variables: Dict[str, Any]) -> Set[str]:
        return set(PLACEHOLDER_PATTERN.findall(template_content or '')) - set(variables.keys())

    def _inline_css(self, html_content: str) -> str:
        """Inline <style> rules for email clients that ignore them"""
        try:
            p = premailer.Premailer(
                html_content,
                remove_classes=False,
                keep_style_tags=True,
                strip_important=False,
                external_styles=None,
                disable_validation=True
            )
            return p.transform()
        except Exception as e:
            logger.warning(f"CSS inlining failed: {str(e)}")
            return html_content


def html_to_text(html_content: str) -> str:
    """
    Convert HTML to plain text for the text/plain alternative
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup.find_all(['style', 'script', 'head']):
        tag.decompose()

    for br in soup.find_all('br'):
        br.replace_with('\n')

    for p in soup.find_all('p'):
        p.insert_after('\n\n')

    for header in soup.find_all(['h1', 'h2', 'h3', 'h4', 'h5', 'h6']):
        header.insert_before('\n')
        header.insert_after('\n')

    for li in soup.find_all('li'):
        li.insert_before('- ')
        li.insert_after('\n')

    for link in soup.find_all('a', href=True):
        link_text = link.get_text()
        href = link['href']
        if href != link_text:
            link.replace_with(f"{link_text} ({href})")

    text = soup.get_text()
    text = re.sub(r'[ \t]+', ' ', text)
    text = re.sub(r'\n\s*\n', '\n\n', text)
    return text.strip()


def strip_tags(html_content: str) -> str:
    """Collapse HTML to a single line of text"""
    if not html_content:
        return ""
    text = BeautifulSoup(html_content, 'html.parser').get_text(' ')
    return re.sub(r'\s+', ' ', text).strip()
