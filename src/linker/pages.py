"""Minimal HTML pages returned by the OAuth endpoints."""

from __future__ import annotations

import html

_LAYOUT = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{title}</title>
<style>
body {{ font-family: system-ui, sans-serif; max-width: 32rem; margin: 4rem auto; text-align: center; }}
.success {{ color: #2e7d32; font-size: 1.5rem; font-weight: bold; }}
.error {{ color: #c62828; font-size: 1.5rem; font-weight: bold; }}
.info {{ color: #666; }}
</style>
</head>
<body>
{content}
</body>
</html>
"""


def _layout(title: str, content: str) -> str:
    return _LAYOUT.format(title=html.escape(title), content=content)


def success_page(username: str) -> str:
    content = (
        '<div class="success">Account Linked</div>\n'
        f"<p>Your Discord account <strong>{html.escape(username)}</strong> "
        "has been successfully linked.</p>\n"
        '<p class="info">You can close this window and return to Telegram.</p>'
    )
    return _layout("Account Linked", content)


def error_page(message: str) -> str:
    content = (
        '<div class="error">Error</div>\n'
        f'<p class="message">{html.escape(message)}</p>'
    )
    return _layout("Error", content)
