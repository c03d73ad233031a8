from __future__ import annotations

import asyncio
import html
import logging
import os
import smtplib
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from functools import lru_cache
from typing import List, Optional, Protocol
from urllib.parse import urlencode

from config import MatchingSettings, get_settings
from schemas import CandidateData, JobData, OutboundMessage
from services.errors import PermanentDeliveryError, TransientDeliveryError
from services.reasons import SCORE_TIERS, score_tier

log = logging.getLogger(__name__)

# 理由タグ → 本文での表示
REASON_TEXT = {
    "skills_match": "Your skills align with the job requirements",
    "location_match": "The job location matches yours",
    "title_match": "It is similar to roles you have held before",
    "industry_experience": "You have relevant industry experience",
    "ai_similarity": "Our matching detected strong overall compatibility",
}

# スコア帯タグ → 件名での言い回し
TIER_PHRASES = {
    "exceptional_match": "an exceptional match",
    "strong_match": "a strong match",
    "good_match": "a good match",
    "decent_match": "a decent match",
}


class Deliverer(Protocol):
    """メッセージを外部チャネルに送り、配信IDを返す。失敗時は DeliveryError 系を投げる。"""

    async def deliver(self, message: OutboundMessage) -> str:
        ...


# ============================================================
# メッセージ組み立て
# ============================================================
def tracking_urls(job_id: int, user_id: int, settings: MatchingSettings) -> dict:
    base = settings.tracking_base_url.rstrip("/")
    ids = {"job_id": job_id, "user_id": user_id}
    return {
        "open_url": f"{base}/notifications/track/open?{urlencode(ids)}",
        "click_url": f"{base}/notifications/track/click?{urlencode(ids)}",
        "unsubscribe_url": f"{base}/notifications/unsubscribe?{urlencode({'user_id': user_id})}",
    }


def _format_salary(job: JobData) -> str:
    if job.salary_min and job.salary_max:
        return f"${job.salary_min:,} - ${job.salary_max:,}"
    if job.salary_min:
        return f"From ${job.salary_min:,}"
    if job.salary_max:
        return f"Up to ${job.salary_max:,}"
    return ""


def _reason_lines(reasons: List[str]) -> List[str]:
    # スコア帯のタグは件名で使うので本文の箇条書きからは外す
    tier_tags = {tag for _, tag in SCORE_TIERS}
    return [
        REASON_TEXT.get(reason, reason.replace("_", " "))
        for reason in reasons
        if reason not in tier_tags
    ]


def build_message(
    job: JobData,
    candidate: CandidateData,
    score: float,
    reasons: List[str],
    settings: MatchingSettings,
) -> OutboundMessage:
    """求人・候補者・マッチ結果から件名と本文を作る。トラッキングはクエリパラメータで埋め込む。"""
    refs = tracking_urls(job.id, candidate.user_id, settings)
    first_name = (candidate.name or "").split(" ")[0] or "there"
    phrase = TIER_PHRASES.get(score_tier(score), "a new match")
    rounded = round(score)
    salary = _format_salary(job)
    snippet = job.description[:300] + ("..." if len(job.description) > 300 else "")
    lines = _reason_lines(reasons)

    subject = f"{first_name}, we found {phrase} for you: {job.title} at {job.company}"

    text_parts = [
        f"Hi {first_name}!",
        "",
        f"{job.title} at {job.company} ({rounded}% match)",
        f"Location: {job.location or '-'}",
    ]
    if job.job_type:
        text_parts.append(f"Type: {job.job_type.replace('_', ' ')}")
    if salary:
        text_parts.append(f"Salary: {salary}")
    text_parts += ["", snippet, ""]
    if lines:
        text_parts.append("Why this job matches you:")
        text_parts += [f"- {line}" for line in lines]
        text_parts.append("")
    text_parts += [
        f"View the job: {refs['click_url']}",
        "",
        f"Unsubscribe: {refs['unsubscribe_url']}",
    ]
    text = "\n".join(text_parts)

    esc = html.escape
    reason_items = "".join(f"<li>{esc(line)}</li>" for line in lines)
    body_html = (
        "<html><body>"
        f"<p>Hi {esc(first_name)}!</p>"
        f"<h2>{esc(job.title)}</h2>"
        f"<p>{esc(job.company)} &middot; {esc(job.location or '-')} &middot; {rounded}% match</p>"
        + (f"<p>{esc(salary)}</p>" if salary else "")
        + f"<p>{esc(snippet)}</p>"
        + (f"<h3>Why this job matches you</h3><ul>{reason_items}</ul>" if reason_items else "")
        + f'<p><a href="{esc(refs["click_url"])}">View job &amp; apply</a></p>'
        f'<p><a href="{esc(refs["unsubscribe_url"])}">Unsubscribe from job alerts</a></p>'
        f'<img src="{esc(refs["open_url"])}" width="1" height="1" alt="" style="display:none" />'
        "</body></html>"
    )

    return OutboundMessage(
        job_id=job.id,
        user_id=candidate.user_id,
        to=candidate.email,
        subject=subject,
        text=text,
        html=body_html,
        tracking_refs=refs,
        headers={
            "X-Job-ID": str(job.id),
            "X-User-ID": str(candidate.user_id),
            "X-Match-Score": str(rounded),
            "X-Match-Type": "ai_featured",
        },
    )


# ============================================================
# 配信バックエンド
# ============================================================
class LogDeliverer:
    """開発用。実際には送らずログに出すだけ。"""

    async def deliver(self, message: OutboundMessage) -> str:
        delivery_id = f"log-{uuid.uuid4().hex}"
        log.info("would send to %s: %s (%s)", message.to, message.subject, delivery_id)
        return delivery_id


class SmtpDeliverer:
    """smtplib で送る。ブロッキング I/O なのでスレッドで実行する。"""

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        from_email: str = "jobs@example.com",
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_email = from_email
        self.use_tls = use_tls
        self.timeout = timeout

    def _build_mime(self, message: OutboundMessage) -> MIMEMultipart:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = self.from_email
        mime["To"] = message.to
        mime["Message-ID"] = make_msgid(domain=self.from_email.split("@")[-1])
        for key, value in message.headers.items():
            mime[key] = value
        mime.attach(MIMEText(message.text, "plain", "utf-8"))
        mime.attach(MIMEText(message.html, "html", "utf-8"))
        return mime

    def _send(self, message: OutboundMessage) -> str:
        mime = self._build_mime(message)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.sendmail(self.from_email, [message.to], mime.as_string())
        return mime["Message-ID"]

    async def deliver(self, message: OutboundMessage) -> str:
        try:
            return await asyncio.to_thread(self._send, message)
        except smtplib.SMTPRecipientsRefused as e:
            raise PermanentDeliveryError(f"recipient refused: {e}", message.user_id) from e
        except (smtplib.SMTPAuthenticationError, smtplib.SMTPSenderRefused) as e:
            # 送信側の設定問題。候補者の行は捨てずに次回に回す
            raise TransientDeliveryError(f"smtp sender/auth error: {e}", message.user_id) from e
        except smtplib.SMTPResponseException as e:
            if 500 <= e.smtp_code < 600:
                raise PermanentDeliveryError(f"smtp {e.smtp_code}: {e.smtp_error!r}", message.user_id) from e
            raise TransientDeliveryError(f"smtp {e.smtp_code}: {e.smtp_error!r}", message.user_id) from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransientDeliveryError(f"smtp unavailable: {e}", message.user_id) from e


def build_deliverer(settings: MatchingSettings) -> Deliverer:
    if settings.delivery_backend == "smtp":
        return SmtpDeliverer(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=os.getenv("SMTP_PASSWORD"),
            from_email=settings.from_email,
            use_tls=settings.smtp_use_tls,
            timeout=settings.delivery_timeout_seconds,
        )
    return LogDeliverer()


@lru_cache(maxsize=1)
def get_deliverer() -> Deliverer:
    return build_deliverer(get_settings())
