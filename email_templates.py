"""
HTML templates for transactional email.

Placeholders are written as {{name}}. Values are HTML-escaped when merged
unless the key is listed in HTML_FIELDS, which holds fragments the
notification code builds itself.
"""
import html
import re
from typing import Any, Dict

PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

HTML_FIELDS = frozenset({
    "header",
    "footer",
    "items_html",
    "payment_status",
    "new_status_badge",
    "status_message",
    "store_logo_html",
})

HEADER = """\
<div style="background: linear-gradient(135deg, {{header_gradient_start}} 0%, {{header_gradient_end}} 100%); padding: 30px; text-align: center; color: #ffffff;">
  {{store_logo_html}}
  <h1 style="margin: 0; font-size: 24px;">{{header_title}}</h1>
  <p style="margin: 8px 0 0; opacity: 0.9;">{{header_subtitle}}</p>
</div>"""

FOOTER = """\
<div style="padding: 20px; text-align: center; color: #6b7280; font-size: 12px;">
  <p>{{footer_message}}</p>
  <p>&copy; {{store_name}}</p>
</div>"""

LAYOUT = """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{{email_title}}</title></head>
<body style="font-family: Arial, sans-serif; background: #f3f4f6; margin: 0; padding: 20px;">
<div style="max-width: 600px; margin: 0 auto; background: #ffffff; border-radius: 8px; overflow: hidden;">
{{header}}
<div style="padding: 24px; color: #111827;">
%s
</div>
{{footer}}
</div>
</body>
</html>"""

TEMPLATES: Dict[str, str] = {
    "order_created": LAYOUT % """\
<p>Hi {{customer_name}},</p>
<p>We've received your order <strong>{{order_id}}</strong> placed on {{order_date}}.</p>
<table width="100%" cellpadding="0" cellspacing="0">{{items_html}}</table>
<table width="100%" style="margin-top: 16px;">
  <tr><td>Subtotal</td><td style="text-align: right;">{{subtotal}}</td></tr>
  <tr><td>Tax</td><td style="text-align: right;">{{tax}}</td></tr>
  <tr><td>Shipping</td><td style="text-align: right;">{{shipping}}</td></tr>
  <tr><td><strong>Total</strong></td><td style="text-align: right;"><strong>{{total}}</strong></td></tr>
</table>
<p>Payment method: {{payment_method}}<br>Payment status: {{payment_status}}</p>
<p>Shipping to: {{shipping_address}}</p>""",
    "payment_confirmed": LAYOUT % """\
<p>We've received your payment for order <strong>{{order_id}}</strong>.</p>
<table width="100%">
  <tr><td>Transaction ID</td><td style="text-align: right;">{{transaction_id}}</td></tr>
  <tr><td>Amount</td><td style="text-align: right;">{{amount}}</td></tr>
  <tr><td>Payment method</td><td style="text-align: right;">{{payment_method}}</td></tr>
  <tr><td>Date</td><td style="text-align: right;">{{payment_date}}</td></tr>
</table>""",
    "status_changed": LAYOUT % """\
<p>Hi {{customer_name}},</p>
<p>The status of your order <strong>{{order_id}}</strong> has changed from {{previous_status}} to {{new_status_badge}}.</p>
<p>{{status_message}}</p>""",
    "welcome": LAYOUT % """\
<p>Hi {{customer_name}},</p>
<p>Thanks for creating an account with {{store_name}}. You can track your orders any time from your account page.</p>
<p><a href="{{store_url}}" style="color: #667eea;">Start shopping</a></p>""",
    "new_order": LAYOUT % """\
<p>Order <strong>{{order_id}}</strong> was placed on {{order_date}}.</p>
<p>Customer: {{customer_name}}<br>Email: {{customer_email}}<br>Phone: {{customer_phone}}</p>
<table width="100%" cellpadding="0" cellspacing="0">{{items_html}}</table>
<p><strong>Total: {{total}}</strong><br>Payment method: {{payment_method}}<br>Payment status: {{payment_status}}</p>
<p>Shipping to: {{shipping_address}}</p>""",
}


def escape(value: Any) -> str:
    if value is None:
        return ""
    return html.escape(str(value), quote=True)


def fill(template: str, data: Dict[str, Any]) -> str:
    """Single pass substitution, so placeholders inside values are never expanded."""

    def _sub(match: "re.Match[str]") -> str:
        key = match.group(1)
        value = data.get(key)
        if key in HTML_FIELDS:
            return "" if value is None else str(value)
        return escape(value)

    return PLACEHOLDER.sub(_sub, template)


def render(name: str, data: Dict[str, Any]) -> str:
    if name not in TEMPLATES:
        raise KeyError(f"Unknown email template: {name}")
    merged = dict(data)
    merged["header"] = fill(HEADER, {
        "header_title": data.get("header_title", ""),
        "header_subtitle": data.get("header_subtitle", ""),
        "header_gradient_start": data.get("header_gradient_start", "#667eea"),
        "header_gradient_end": data.get("header_gradient_end", "#764ba2"),
        "store_logo_html": data.get("store_logo_html", ""),
    })
    merged["footer"] = fill(FOOTER, {
        "footer_message": data.get("footer_message", "If you have any questions, please don't hesitate to contact us."),
        "store_name": data.get("store_name", "Our Store"),
    })
    return fill(TEMPLATES[name], merged)
