"""
HTML email templates
Small inline-styled layouts shared by customer, worker and admin emails
"""

from typing import Optional

THEME = {
    "primary": "#2563eb",
    "background": "#f8fafc",
    "card_bg": "#ffffff",
    "text_primary": "#0f172a",
    "text_muted": "#64748b",
    "border": "#e2e8f0",
    "danger": "#ef4444",
}


def get_base_template(title: str, body_html: str, cta_url: Optional[str] = None, cta_label: Optional[str] = None) -> str:
    """Wrap content in the common card layout"""
    cta = ""
    if cta_url and cta_label:
        cta = (
            f'<p style="text-align:center;margin:24px 0">'
            f'<a href="{cta_url}" style="background:{THEME["primary"]};color:#fff;'
            f'padding:14px 32px;border-radius:8px;text-decoration:none;font-weight:600">{cta_label}</a></p>'
        )
    return f"""<!DOCTYPE html>
<html>
  <body style="margin:0;padding:24px;background:{THEME['background']};font-family:Arial,sans-serif">
    <div style="max-width:560px;margin:0 auto;background:{THEME['card_bg']};border:1px solid {THEME['border']};border-radius:12px;padding:32px">
      <h1 style="color:{THEME['text_primary']};font-size:22px;margin-top:0">{title}</h1>
      {body_html}
      {cta}
      <p style="color:{THEME['text_muted']};font-size:12px;margin-top:32px">TV Mount Pros</p>
    </div>
  </body>
</html>"""


def _row(label: str, value) -> str:
    return (
        f'<tr><td style="color:{THEME["text_muted"]};padding:4px 12px 4px 0">{label}</td>'
        f'<td style="color:{THEME["text_primary"]};padding:4px 0">{value}</td></tr>'
    )


def booking_confirmation_template(customer_name: str, booking: dict, manage_url: Optional[str] = None) -> str:
    rows = "".join(
        [
            _row("Date", booking.get("scheduled_date")),
            _row("Time", booking.get("scheduled_start")),
            _row("Address", booking.get("address") or "On file"),
            _row("Total", f"${booking.get('total_price', 0):.2f}"),
        ]
    )
    body = (
        f"<p>Hi {customer_name},</p>"
        f"<p>Your TV mounting appointment is booked. Your card has been authorized and will only be charged once the job is done.</p>"
        f"<table>{rows}</table>"
    )
    return get_base_template("Booking confirmed", body, manage_url, "View booking" if manage_url else None)


def worker_assignment_template(worker_name: str, booking: dict) -> str:
    rows = "".join(
        [
            _row("Date", booking.get("scheduled_date")),
            _row("Time", booking.get("scheduled_start")),
            _row("ZIP", booking.get("zipcode")),
        ]
    )
    body = f"<p>Hi {worker_name},</p><p>A new job has been assigned to you.</p><table>{rows}</table>"
    return get_base_template("New job assigned", body)


def coverage_offer_template(worker_name: str, booking: dict, priority: int, accept_url: str) -> str:
    reach = "near your service area" if priority == 2 else "in your region"
    body = (
        f"<p>Hi {worker_name},</p>"
        f"<p>A customer {reach} needs a TV mounted on {booking.get('scheduled_date')} at "
        f"{booking.get('scheduled_start')} (ZIP {booking.get('zipcode')}). The first worker to accept gets the job.</p>"
    )
    return get_base_template("Job available near you", body, accept_url, "Accept job")


def increment_notification_template(customer_name: str, added_amount: float, new_total: float, services: list) -> str:
    items = "".join(f"<li>{name}</li>" for name in services) or "<li>Additional work</li>"
    body = (
        f"<p>Hi {customer_name},</p>"
        f"<p>Your technician added the following to your appointment:</p><ul>{items}</ul>"
        f"<table>{_row('Added', f'${added_amount:.2f}')}{_row('New total', f'${new_total:.2f}')}</table>"
        f"<p>The authorization on your card has been updated. You will only be charged when the job is complete.</p>"
    )
    return get_base_template("Your booking total was updated", body)


def admin_alert_template(alert_type: str, message: str, booking_id: Optional[str], details: dict) -> str:
    detail_rows = "".join(_row(k, v) for k, v in (details or {}).items())
    body = (
        f'<p style="color:{THEME["danger"]};font-weight:600">{alert_type}</p>'
        f"<p>{message}</p>"
        f"<table>{_row('Booking', booking_id or '-')}{detail_rows}</table>"
    )
    return get_base_template("Admin alert", body)
