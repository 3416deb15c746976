from html import escape
from urllib.parse import urlencode

import nh3

from .config import BASE_URL, HOA_NAME
from .encryption import member_contact
from .email import OutgoingEmail
from .models import Admin, Member, Response, Survey
from .utils import format_display_time

DESCRIPTION_TAGS = {
    "p", "br", "b", "i", "em", "strong", "u", "ul", "ol", "li",
    "h1", "h2", "h3", "blockquote", "a",
}
DESCRIPTION_ATTRIBUTES = {"a": {"href", "target"}}


def survey_link(response_token: str) -> str:
    return f"{BASE_URL}/survey/{response_token}"


def signature_link(response_token: str, signature_token: str) -> str:
    return f"{BASE_URL}/survey/{response_token}/sign/{signature_token}"


def invite_link(invite_token: str) -> str:
    return f"{BASE_URL}/invite/{invite_token}"


def reset_link(reset_token: str) -> str:
    return f"{BASE_URL}/reset-password?token={reset_token}"


def verification_link(token: str, email: str) -> str:
    return f"{BASE_URL}/api/auth/verify?{urlencode({'token': token, 'email': email})}"


def sanitize_description(html_text: str | None) -> str:
    if not html_text:
        return ""
    return nh3.clean(html_text, tags=DESCRIPTION_TAGS, attributes=DESCRIPTION_ATTRIBUTES)


def base_layout(title: str, greeting: str, body_html: str, button: tuple[str, str] | None = None, footer: str | None = None) -> str:
    button_html = ""
    if button:
        label, url = button
        url_html = escape(url)
        button_html = f"""
      <div style="text-align: center; margin: 30px 0;">
        <a href="{url_html}" style="background-color: #2563eb; color: #fff; padding: 12px 30px; text-decoration: none; border-radius: 6px; display: inline-block; font-weight: 600;">{escape(label)}</a>
      </div>
      <p style="font-size: 12px; color: #64748b;">If the button doesn&apos;t work, copy this link into your browser:<br /><a href="{url_html}">{url_html}</a></p>"""
    footer_text = footer or "This is an automated email. Please do not reply directly to this message."
    return f"""
<html>
  <body style="font-family: Arial, sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 600px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px;">
      <h2 style="margin-top: 0; color: #2563eb;">{escape(title)}</h2>
      <p>{escape(greeting)}</p>
      <div style="margin-top: 12px;">{body_html}</div>{button_html}
      <hr style="margin: 30px 0; border: none; border-top: 1px solid #e5e7eb;" />
      <p style="color: #6b7280; font-size: 12px;">{escape(footer_text)}</p>
    </div>
  </body>
</html>
"""


def survey_invitation(survey: Survey, member: Member, response: Response, reminder: bool = False) -> OutgoingEmail:
    link = survey_link(response.token)
    contact = member_contact(member)
    title_html = escape(survey.title)
    lot_html = escape(contact["lot"])
    parts = []
    description = sanitize_description(survey.description)
    if description:
        parts.append(f"<p>{description}</p>")
    if reminder:
        parts.append(
            f"<p>Our records show that the resident of <strong>Lot {lot_html}</strong> has not yet completed the survey "
            f"&quot;{title_html}&quot;. Please take a few minutes to complete it by clicking the button below.</p>"
        )
        parts.append("<p>If you have already completed the survey, please disregard this reminder.</p>")
        subject = f"Reminder: {survey.title}"
        text_body = f"Please complete the survey: {link}\n"
    else:
        parts.append(f"<p>You are invited to participate in the survey: <strong>{title_html}</strong>.</p>")
        parts.append("<p>Please click the button below to complete the survey.</p>")
        subject = f"Survey: {survey.title}"
        text_body = f"You are invited to participate in the survey “{survey.title}”.\n\nOpen survey: {link}\n"
    html_body = base_layout(
        f"Survey for Lot {contact['lot']} – {contact['name']}",
        f"Hello {contact['name'] or 'Resident'},",
        "\n".join(parts),
        button=("Take Survey", link),
        footer=f"This survey is sent to you as a resident of {HOA_NAME}. Please do not share this link.",
    )
    return OutgoingEmail(
        to=contact["email"],
        subject=subject,
        html_body=html_body,
        text_body=text_body,
        meta={"response_id": response.id, "member_id": member.id},
    )


def signature_request(survey: Survey, member: Member, response: Response) -> OutgoingEmail:
    contact = member_contact(member)
    link = signature_link(response.token, response.signature_token)
    view_link = survey_link(response.token)
    body_html = f"""
        <p>Thank you for submitting your response to the survey: <strong>{escape(survey.title)}</strong></p>
        <p>To validate the authenticity of your submission, please click the button below to digitally sign your response.</p>
        <div style="background-color: #fef3c7; border-left: 4px solid #f59e0b; padding: 15px; margin: 20px 0;">
          <p style="margin: 0; color: #92400e;"><strong>Important:</strong> Once you sign your response, it can no longer be changed or edited. Please review your answers before signing.</p>
        </div>
        <p><a href="{escape(view_link)}">View your response</a></p>"""
    text_body = f"""Thank you for submitting your response to “{survey.title}”.

Sign your response: {link}
View your response: {view_link}

Once you sign your response, it can no longer be changed.
"""
    return OutgoingEmail(
        to=contact["email"],
        subject=f"Digital Signature Request: {survey.title}",
        html_body=base_layout(
            "Digital Signature Request",
            f"Hello {contact['name']},",
            body_html,
            button=("Sign Your Response", link),
            footer="This link stops working when a new signature request is made.",
        ),
        text_body=text_body,
        meta={"response_id": response.id},
    )


def signature_confirmation(survey: Survey, member: Member, response: Response) -> OutgoingEmail:
    contact = member_contact(member)
    submitted = format_display_time(response.submitted_at)
    signed = format_display_time(response.signed_at)
    body_html = f"""
        <p>Your digital signature has been received and recorded for your survey response:</p>
        <div style="background-color: #f3f4f6; padding: 15px; border-radius: 5px; margin: 20px 0;">
          <p style="margin: 5px 0;"><strong>Survey:</strong> {escape(survey.title)}</p>
          <p style="margin: 5px 0;"><strong>Submitted:</strong> {escape(submitted)}</p>
          <p style="margin: 5px 0;"><strong>Signed:</strong> {escape(signed)}</p>
        </div>
        <p>Your response is now finalized and can no longer be edited or changed.</p>"""
    text_body = f"""Your signature for “{survey.title}” has been recorded.

Submitted: {submitted}
Signed: {signed}
"""
    return OutgoingEmail(
        to=contact["email"],
        subject=f"Signature Confirmed: {survey.title}",
        html_body=base_layout(
            "Survey Response Signature Confirmed",
            f"Hello {contact['name']},",
            body_html,
            footer="This is an automated confirmation email. Please keep this for your records.",
        ),
        text_body=text_body,
        meta={"response_id": response.id},
    )


def admin_invite(admin: Admin, inviter: Admin) -> OutgoingEmail:
    link = invite_link(admin.invite_token)
    expires = format_display_time(admin.invite_expires)
    body_html = f"""
        <p>{escape(inviter.name or inviter.email)} invited you as an administrator for <strong>{escape(HOA_NAME)}</strong>.</p>
        <p>This invite will expire on {escape(expires)}.</p>"""
    return OutgoingEmail(
        to=admin.email,
        subject=f"{HOA_NAME} Survey Admin Invite",
        html_body=base_layout(
            "Administrator Invitation",
            f"Hello {admin.name},",
            body_html,
            button=("Accept Invitation", link),
        ),
        text_body=f"Accept your invitation: {link}\nThis invite expires on {expires}.\n",
    )


def password_reset(admin: Admin, requested_by: Admin | None = None) -> OutgoingEmail:
    link = reset_link(admin.reset_token)
    expires = format_display_time(admin.reset_token_expires)
    if requested_by is not None and requested_by.id != admin.id:
        intro = "An administrator has requested a password reset for your account."
    else:
        intro = "You requested to reset your password. Click the button below to set a new password."
    body_html = f"""
        <p>{escape(intro)}</p>
        <p>This link will expire on {escape(expires)}.</p>
        <p>If you didn&apos;t expect this email, you can safely ignore it.</p>"""
    return OutgoingEmail(
        to=admin.email,
        subject="Password Reset Request",
        html_body=base_layout(
            "Password Reset Request",
            f"Hello {admin.name or 'Admin'},",
            body_html,
            button=("Reset Password", link),
        ),
        text_body=f"{intro}\n\nReset your password: {link}\n",
    )


def email_verification(admin: Admin, token: str) -> OutgoingEmail:
    link = verification_link(token, admin.email)
    return OutgoingEmail(
        to=admin.email,
        subject=f"Verify your {HOA_NAME} administrator account",
        html_body=base_layout(
            "Verify Your Account",
            f"Hello {admin.name or 'Admin'},",
            "<p>Click the button below to verify your administrator account.</p>"
            "<p>If you didn&apos;t request this, please ignore this email.</p>",
            button=("Verify Account", link),
        ),
        text_body=f"Verify your account: {link}\n",
    )


def min_responses_reached(survey: Survey, creator: Admin, submitted: int, stats: list[dict]) -> OutgoingEmail:
    rows = []
    lines = []
    for stat in stats:
        if "average" in stat:
            summary = f"average {stat['average']}"
        elif "counts" in stat:
            summary = ", ".join(f"{k}: {v}" for k, v in stat["counts"].items()) or "no answers"
        else:
            summary = f"{stat['total_responses']} written answers"
        rows.append(f"<li><strong>{escape(stat['text'])}</strong>: {escape(summary)}</li>")
        lines.append(f"- {stat['text']}: {summary}")
    body_html = f"""
        <p>The survey <strong>{escape(survey.title)}</strong> has reached its minimum of {survey.min_responses} responses ({submitted} submitted).</p>
        <ul>{''.join(rows)}</ul>"""
    return OutgoingEmail(
        to=creator.email,
        subject=f"Minimum responses reached: {survey.title}",
        html_body=base_layout(
            "Minimum Responses Reached",
            f"Hello {creator.name or 'Admin'},",
            body_html,
            button=("View Results", f"{BASE_URL}/dashboard/surveys/{survey.id}/results"),
        ),
        text_body=f"{survey.title} reached {submitted} responses.\n" + "\n".join(lines) + "\n",
    )
