"""Builds the SMS text / email body for each code purpose.

Email HTML is rendered from Jinja2 templates under ``templates/otp/``; the
plain-text variants are kept inline so an SMS never depends on the template
directory being deployed.
"""

import os
from dataclasses import dataclass

from jinja2 import Environment, FileSystemLoader, select_autoescape

from infrastructure.delivery.protocol import OtpMessage
from schemas.models.otp import Channel, Purpose

_DEFAULT_TEMPLATE_DIR = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(__file__))),
    "templates",
    "otp",
)


@dataclass(frozen=True)
class _PurposeCopy:
    subject: str
    sms_label: str
    email_label: str
    closing: str
    template: str


_COPY = {
    Purpose.VERIFICATION: _PurposeCopy(
        subject="Email Verification",
        sms_label="verification code",
        email_label="email verification code",
        closing="If you did not request this, please ignore this email.",
        template="verification.html",
    ),
    Purpose.PASSWORD_RESET: _PurposeCopy(
        subject="Password Reset",
        sms_label="password reset code",
        email_label="password reset code",
        closing="If you did not request this, please contact our support team immediately.",
        template="password_reset.html",
    ),
    Purpose.LOGIN: _PurposeCopy(
        subject="Login Verification",
        sms_label="login verification code",
        email_label="login verification code",
        closing="If you did not attempt to log in, please secure your account immediately.",
        template="login.html",
    ),
}


class MessageRenderer:
    def __init__(
        self,
        app_name: str = "Okada Ride Africa",
        app_url: str = "https://okadaride.africa",
        expiry_minutes: int = 10,
        template_dir: str = _DEFAULT_TEMPLATE_DIR,
    ) -> None:
        self._app_name = app_name
        self._app_url = app_url
        self._expiry_minutes = expiry_minutes
        self._jinja = Environment(
            loader=FileSystemLoader(template_dir),
            autoescape=select_autoescape(["html", "xml"]),
        )

    def render(self, purpose: Purpose, channel: Channel, code: str) -> OtpMessage:
        copy = _COPY[purpose]
        subject = f"{self._app_name} - {copy.subject}"

        if channel is Channel.SMS:
            text = (
                f"[{self._app_name}] Your {copy.sms_label} is: {code}. "
                f"Valid for {self._expiry_minutes} minutes."
            )
            return OtpMessage(subject=subject, text=text)

        text = (
            f"Your {copy.email_label} is: {code}\n\n"
            f"This code will expire in {self._expiry_minutes} minutes.\n\n"
            f"{copy.closing}"
        )
        html = self._jinja.get_template(copy.template).render(
            otp_code=code,
            app_name=self._app_name,
            app_url=self._app_url,
            expiry_minutes=self._expiry_minutes,
            closing=copy.closing,
        )
        return OtpMessage(subject=subject, text=text, html=html)
