"""
Channel content for insight notifications.

The insight itself lives behind the payload ref; messages only announce it
and link to it.
"""

from dataclasses import dataclass


@dataclass
class InsightMessage:
    """Rendered notification content."""

    title: str
    text: str
    url: str


class InsightFormatter:
    """Renders the short announcement sent over every channel."""

    DEFAULT_BASE_URL = "https://app.example.com/insights"

    def __init__(self, insights_base_url: str = DEFAULT_BASE_URL):
        self.insights_base_url = insights_base_url.rstrip("/")

    def render(self, payload_ref: str) -> InsightMessage:
        url = f"{self.insights_base_url}/{payload_ref}"
        return InsightMessage(
            title="Your product insight is ready",
            text=f"We looked at the products you track. See today's insight: {url}",
            url=url,
        )

    def render_email_html(self, message: InsightMessage) -> str:
        """Create HTML email body."""
        return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; }}
        .insight-box {{
            border-left: 4px solid #2ECC71;
            padding: 15px;
            background-color: #f9f9f9;
        }}
        .title {{ font-size: 20px; font-weight: bold; color: #333; }}
        .message {{ margin: 15px 0; color: #555; }}
        .link a {{ color: #2ECC71; text-decoration: none; }}
    </style>
</head>
<body>
    <div class="insight-box">
        <div class="title">{message.title}</div>
        <div class="message">{message.text}</div>
        <div class="link"><a href="{message.url}">Open insight</a></div>
    </div>
</body>
</html>
"""
