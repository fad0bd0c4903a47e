"""Follow-up email templates for the 3/7/14 day drip sequence."""

import html
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping

SITE_URL = "https://your-domain.com"


class TemplateNotFound(LookupError):
    """Raised when no template exists for a schedule type."""


@dataclass
class RenderedEmail:
    subject: str
    html: str
    text: str


EMAIL_TEMPLATES: Dict[str, Dict[str, str]] = {
    "day3": {
        "subject": "Follow up: Cleantech Directory - Still interested?",
        "html": """
      <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <h2 style="color: #4CAF50;">{greeting}!</h2>
        <p>We noticed you were exploring our Cleantech Directory a few days ago. Are you still looking for sustainable technology solutions?</p>
        <p>{personalized_content}</p>
        <p>We can help you connect with:</p>
        <ul style="color: #333;">{recommendation_items}</ul>
        <div style="text-align: center; margin: 30px 0;">
          <a href="{site_url}/chat" style="background: #4CAF50; color: white; padding: 12px 24px; text-decoration: none; border-radius: 5px; display: inline-block;">Continue Your Search</a>
        </div>
        <p style="color: #666; font-size: 14px;">Need help? Simply reply to this email or visit our website.</p>
      </div>
    """,
    },
    "day7": {
        "subject": "Cleantech Solutions: Weekly Industry Updates",
        "html": """
      <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <h2 style="color: #2196F3;">Weekly Cleantech Highlights</h2>
        <p>{greeting},</p>
        <p>{personalized_content}</p>
        <ul style="color: #333;">
          <li>New breakthrough in solar energy efficiency reaches 47%</li>
          <li>Innovative waste-to-energy solutions reducing landfill by 80%</li>
          <li>Advanced water purification technology removes 99.9% of contaminants</li>
          <li>Carbon capture technology scales to industrial level</li>
        </ul>
        <p>Ready to explore cleantech companies in your area?</p>
        <div style="text-align: center; margin: 30px 0;">
          <a href="{site_url}/companies" style="background: #2196F3; color: white; padding: 12px 24px; text-decoration: none; border-radius: 5px; display: inline-block;">Browse Companies</a>
        </div>
        <p style="color: #666; font-size: 14px;">Stay updated with the latest in clean technology innovations.</p>
      </div>
    """,
    },
    "day14": {
        "subject": "Last chance: Connect with Cleantech Leaders",
        "html": """
      <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <h2 style="color: #FF5722;">Don't miss out on cleantech opportunities!</h2>
        <p>{greeting},</p>
        <p>It's been two weeks since you visited our Cleantech Directory. The industry is moving fast, and new opportunities emerge daily.</p>
        <p>{personalized_content}</p>
        <p><strong>Join thousands of businesses already connected through our platform:</strong></p>
        <ul style="color: #333;">
          <li>Access to 500+ verified cleantech companies</li>
          <li>Direct connections with technology providers</li>
          <li>Industry insights and market trends</li>
          <li>Personalized recommendations</li>
        </ul>
        <div style="text-align: center; margin: 30px 0;">
          <a href="{site_url}/signup" style="background: #FF5722; color: white; padding: 15px 30px; text-decoration: none; border-radius: 5px; display: inline-block; font-weight: bold;">Join Now - Free</a>
        </div>
        <p style="color: #666; font-size: 12px; text-align: center;">
          This is our final follow-up.
          <a href="{site_url}/unsubscribe" style="color: #666;">Unsubscribe</a> |
          <a href="{site_url}/contact" style="color: #666;">Contact Support</a>
        </p>
      </div>
    """,
    },
}

DEFAULT_RECOMMENDATIONS = (
    "Renewable energy companies",
    "Waste management solutions",
    "Water treatment technologies",
    "Clean transportation solutions",
)


def _join(items, sep: str = ", ") -> str:
    return sep.join(str(item) for item in items or [] if item)


def personalized_content(template_type: str, snapshot: Mapping[str, Any]) -> str:
    """Paragraph tailored to the conversation for the given template."""
    interests = list(snapshot.get("interests") or [])
    needs = _join(snapshot.get("business_needs"), " and ")
    role = snapshot.get("role") or "professional"

    if template_type == "day3":
        if not interests:
            return (
                "Based on our conversation, we have some recommendations "
                "that might be exactly what you're looking for."
            )
        text = f"I remember you were interested in {_join(interests)} solutions."
        if needs:
            text += f" As a {role}, you mentioned some specific needs around {needs}."
        return text + " Based on our conversation, I have some specific recommendations for you."
    if template_type == "day7":
        if not interests:
            return "Here are some exciting developments in the cleantech industry this week."
        return (
            f"Since you're interested in {_join(interests[:2], ' and ')}, I thought you'd find this week's "
            "industry updates particularly relevant."
        )
    if template_type == "day14":
        parts = []
        if interests:
            topics = _join(interests, " and ")
            parts.append(f"I wanted to reach out one final time about the {topics} opportunities we discussed.")
        pain_points = _join(snapshot.get("pain_points"), " and ")
        if pain_points:
            parts.append(
                f"I know you mentioned concerns about {pain_points}, and I've found some solutions "
                "that specifically address these challenges."
            )
        next_actions = _join(snapshot.get("next_actions"))
        if next_actions:
            parts.append(f"Your next steps could include: {next_actions}.")
        return " ".join(parts)
    raise TemplateNotFound(f"Template {template_type} not found")


def render(template_type: str, context: Mapping[str, Any]) -> RenderedEmail:
    template = EMAIL_TEMPLATES.get(template_type)
    if not template:
        raise TemplateNotFound(f"Template {template_type} not found")

    recommendations = list(context.get("recommendations") or []) or list(DEFAULT_RECOMMENDATIONS)
    content = context.get("personalized_content")
    if content is None:
        content = personalized_content(template_type, context)
    body = template["html"].format(
        greeting=html.escape(context.get("greeting") or "Hi there"),
        personalized_content=html.escape(content),
        recommendation_items="".join(f"<li>{html.escape(item)}</li>" for item in recommendations),
        site_url=context.get("site_url") or SITE_URL,
    )
    text = re.sub(r"<[^>]*>", "", body)
    text = re.sub(r"\n\s*\n+", "\n\n", text).strip()
    return RenderedEmail(subject=template["subject"], html=body, text=text)
