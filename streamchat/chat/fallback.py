"""Canned responses served without calling the backend.

Some fixed questions get a precomputed answer. The orchestrator streams it
line by line with a fixed delay between chunks, through the same channel
contract as a backend generation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

_HTML_HELLO_WORLD = (
    'Here is a minimal HTML "Hello, World!" page:\n\n'
    "```html\n"
    "<!DOCTYPE html>\n"
    '<html lang="en">\n'
    "<head>\n"
    '    <meta charset="UTF-8">\n'
    '    <meta name="viewport" content="width=device-width, initial-scale=1.0">\n'
    "    <title>Hello World</title>\n"
    "</head>\n"
    "<body>\n"
    "    <h1>Hello, World!</h1>\n"
    "</body>\n"
    "</html>\n"
    "```\n\n"
    "### What the code does\n"
    "1. `<!DOCTYPE html>` declares an HTML5 document\n"
    '2. `<html lang="en">` is the root element and sets the page language\n'
    "3. `<head>` holds the document metadata\n"
    '4. `<meta charset="UTF-8">` sets the character encoding\n'
    '5. `<meta name="viewport">` makes the page render correctly on mobile\n'
    "6. `<title>` sets the browser tab title\n"
    "7. `<body>` holds the visible page content\n"
    "8. `<h1>` renders a top-level heading\n\n"
    "Save it as an `.html` file and open it in a browser to see the result."
)

# Split after every newline, keeping the newline with its line.
_LINE_SPLIT = re.compile(r"(?<=\n)")


@dataclass(frozen=True)
class CannedResponse:
    name: str
    matches: Callable[[str], bool]
    text: str


def _is_html_hello_world(question: str) -> bool:
    q = question.lower()
    return "html" in q and "helloworld" in q


CANNED_RESPONSES: tuple[CannedResponse, ...] = (
    CannedResponse(name="html_hello_world", matches=_is_html_hello_world, text=_HTML_HELLO_WORLD),
)


def find_canned(
    question: str,
    responses: tuple[CannedResponse, ...] = CANNED_RESPONSES,
) -> CannedResponse | None:
    for response in responses:
        if response.matches(question):
            return response
    return None


def split_chunks(text: str) -> list[str]:
    """Split text into line chunks; concatenation reproduces the input."""
    return [part for part in _LINE_SPLIT.split(text) if part]
