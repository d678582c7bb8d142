"""
Reduce imported field HTML to plain study text.
"""

import re

_TAG = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")

# Decoded in this order; &amp; comes after &lt;/&gt; so "&amp;lt;" gives "&lt;"
_ENTITIES = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&amp;", "&"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&nbsp;", " "),
)


def _clean_once(text: str) -> str:
    text = _TAG.sub("", text)
    for entity, char in _ENTITIES:
        text = text.replace(entity, char)
    return _WHITESPACE.sub(" ", text).strip()


def clean(html: str) -> str:
    """Strip tags, decode common entities and normalise whitespace.

    Decoding can expose new markup (``&lt;b&gt;`` becomes ``<b>``), so the
    pass repeats until the text stops changing. The result is therefore
    unchanged by a second call.

    :param html: Field content, possibly containing markup.
    :returns: Plain text on a single line.
    """
    if not html:
        return ""
    text = _clean_once(html)
    while True:
        again = _clean_once(text)
        if again == text:
            return text
        text = again
