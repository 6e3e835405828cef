import pytest

from core.template_engine import EmailTemplateEngine, html_to_text, strip_tags


@pytest.fixture
def engine():
    return EmailTemplateEngine()


def test_html_values_are_escaped_but_text_values_are_not(engine):
    variables = {'first_name': '<Ann & Co>'}

    assert engine.substitute('<p>Hi {{first_name}}</p>', variables, html=True) == \
        '<p>Hi &lt;Ann &amp; Co&gt;</p>'
    assert engine.substitute('Hi {{ first_name }}', variables) == 'Hi <Ann & Co>'


def test_unknown_and_malformed_placeholders_are_left_alone(engine):
    body = '<p>Hi {{first_name}}, use {{code}} before {{ first_name }</p>{% raw %}{# note #}'

    assert engine.substitute(body, {'first_name': 'Ann'}, html=True) == \
        '<p>Hi Ann, use {{code}} before {{ first_name }</p>{% raw %}{# note #}'


def test_none_values_become_empty(engine):
    assert engine.substitute('Items: {{cart_items}}.', {'cart_items': None}) == 'Items: .'


def test_render_inlines_css_and_derives_text(engine):
    body = (
        '<html><head><style>p { color: red }</style></head>'
        '<body><p>Hi {{ first_name }}</p><p>Start {{ course }}</p></body></html>'
    )

    rendered = engine.render('Welcome {{ first_name }}', body, {'first_name': 'Ann'})

    assert rendered.subject == 'Welcome Ann'
    assert 'style="color:red"' in rendered.html
    assert 'Hi Ann' in rendered.text
    assert 'color' not in rendered.text
    assert rendered.variables_missing == {'course'}


def test_inlining_can_be_switched_off():
    body = '<html><head><style>p { color: red }</style></head><body><p>Hi</p></body></html>'

    rendered = EmailTemplateEngine(inline_css=False).render('Hi', body, {})

    assert rendered.html == body


def test_html_to_text():
    text = html_to_text(
        '<h1>News</h1><p>Read <a href="https://example.test/post">the post</a></p><ul><li>One</li><li>Two</li></ul>'
    )
    assert 'News' in text
    assert 'the post (https://example.test/post)' in text
    assert '- One' in text and '- Two' in text


def test_strip_tags():
    assert strip_tags('<p>Hello</p>\n<p>  world </p>') == 'Hello world'
    assert strip_tags('') == ''
