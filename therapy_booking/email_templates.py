"""
MJML Email Templates
Booking lifecycle emails rendered with MJML for cross-client compatibility
"""

from typing import Optional

THEME = {
    "primary": "#7c3aed",
    "background": "#f8fafc",
    "text_primary": "#0f172a",
    "text_secondary": "#334155",
    "text_muted": "#64748b",
    "border": "#e2e8f0",
}


def get_base_template(
    title: str,
    preview_text: str,
    content_sections: str,
    cta_url: Optional[str] = None,
    cta_label: Optional[str] = None,
) -> str:
    """Base MJML template wrapper for all emails"""

    cta_section = ""
    if cta_url and cta_label:
        cta_section = f"""
        <mj-section padding="20px 0">
          <mj-column>
            <mj-button href="{cta_url}" background-color="{THEME['primary']}" color="#ffffff"
              font-weight="600" border-radius="8px" padding="18px 40px" font-size="16px">
              {cta_label}
            </mj-button>
          </mj-column>
        </mj-section>
        """

    return f"""
    <mjml>
      <mj-head>
        <mj-title>{title}</mj-title>
        <mj-preview>{preview_text}</mj-preview>
        <mj-attributes>
          <mj-all font-family="-apple-system, BlinkMacSystemFont, 'Segoe UI', Arial, sans-serif" />
          <mj-text font-size="16px" line-height="1.6" color="{THEME['text_secondary']}" />
        </mj-attributes>
      </mj-head>
      <mj-body background-color="{THEME['background']}">
        <mj-section background-color="#ffffff" padding="40px 40px 48px 40px">
          <mj-column>
            <mj-text font-size="24px" font-weight="600" color="{THEME['text_primary']}" padding="0 0 16px 0">
              {title}
            </mj-text>
            {content_sections}
          </mj-column>
        </mj-section>
        {cta_section}
        <mj-section padding="32px 20px">
          <mj-column>
            <mj-text align="center" font-size="13px" color="{THEME['text_muted']}" padding="0">
              You're receiving this because you booked a session with Little Care.
            </mj-text>
          </mj-column>
        </mj-section>
      </mj-body>
    </mjml>
    """


def _details(rows: list[tuple[str, str]]) -> str:
    lines = "".join(
        f"<tr><td style='padding:4px 12px 4px 0;color:{THEME['text_muted']}'>{label}</td>"
        f"<td style='padding:4px 0;color:{THEME['text_primary']}'>{value}</td></tr>"
        for label, value in rows
    )
    return f'<mj-table padding="8px 0">{lines}</mj-table>'


def booking_confirmed_template(
    recipient_name: str, counterpart_name: str, session_date: str, session_time: str, meet_link: str
) -> str:
    content = f"""
    <mj-text>Hi {recipient_name}, your session is confirmed.</mj-text>
    {_details([("With", counterpart_name), ("Date", session_date), ("Time", session_time)])}
    """
    return get_base_template(
        "Session confirmed", f"{session_date} at {session_time}", content, meet_link, "Join session"
    )


def session_rescheduled_template(
    recipient_name: str, session_date: str, session_time: str, meet_link: Optional[str]
) -> str:
    content = f"""
    <mj-text>Hi {recipient_name}, your session has been moved.</mj-text>
    {_details([("New date", session_date), ("New time", session_time)])}
    """
    return get_base_template(
        "Session rescheduled", f"Now on {session_date} at {session_time}", content, meet_link, "Join session"
    )


def reschedule_request_template(
    client_name: str,
    psychologist_name: str,
    current_date: str,
    current_time: str,
    requested_date: str,
    requested_time: str,
) -> str:
    content = f"""
    <mj-text>{client_name} asked to reschedule a session that needs approval.</mj-text>
    {_details([
        ("Psychologist", psychologist_name),
        ("Current", f"{current_date} {current_time}"),
        ("Requested", f"{requested_date} {requested_time}"),
    ])}
    """
    return get_base_template("Reschedule approval needed", f"Request from {client_name}", content)


def session_cancelled_template(recipient_name: str, session_date: str, session_time: str) -> str:
    content = f"""
    <mj-text>Hi {recipient_name}, the session on {session_date} at {session_time} has been cancelled.</mj-text>
    """
    return get_base_template("Session cancelled", f"{session_date} at {session_time}", content)


def credit_issued_template(client_name: str, amount: float, transaction_id: str) -> str:
    content = f"""
    <mj-text>Hi {client_name}, the slot you paid for was booked by someone else moments before your
    payment completed. Your payment is safe and has been saved as credit.</mj-text>
    {_details([("Credit", f"₹{amount:.2f}"), ("Reference", transaction_id)])}
    <mj-text>Pick any other available slot and apply this credit when booking.</mj-text>
    """
    return get_base_template("Your payment is saved as credit", "Choose a new slot", content)
