#!/usr/bin/env python3
"""
Cloud Audit Engine - Alert Sinks
Delivers the summary of a completed audit to each enabled channel of the
account owner: email (SMTP), Slack (incoming webhook, Block Kit) and Spike
(paging webhook).

Channels are independent: a failure on one is logged and recorded in the
alert log, and never blocks the others or fails the audit.
"""

import json
import smtplib
import urllib.request
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional

from .config import config
from .exceptions import PersistenceError
from .logger import get_logger
from .models import AuditSummary

VALID_CHANNELS = ("email", "slack", "spike")

SEVERITY_COLORS = {
    "CRITICAL": "#dc2626",
    "HIGH": "#ea580c",
}

logger = get_logger('alerts')


def should_alert(summary: AuditSummary, channel_settings: Dict[str, Any]) -> bool:
    """True when the summary crosses a threshold the channel opted into."""
    if summary.critical > 0 and channel_settings.get('alert_on_critical'):
        return True
    if summary.high > 0 and channel_settings.get('alert_on_high'):
        return True
    return False


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def email_subject(summary: AuditSummary) -> str:
    return (f"[{summary.provider}] Security Audit Complete - "
            f"{summary.critical} Critical, {summary.high} High findings")


def email_body(summary: AuditSummary, dashboard_url: str = "") -> str:
    lines = [
        f"Security audit completed for {summary.account_name} ({summary.provider}).",
        "",
        f"  Critical: {summary.critical}",
        f"  High:     {summary.high}",
        f"  Medium:   {summary.medium}",
        f"  Low:      {summary.low}",
        f"  Total:    {summary.total_findings}",
        "",
        f"Risk score: {summary.risk_score:.1f} / 100",
    ]
    if dashboard_url and summary.audit_id:
        lines += ["", f"Details: {dashboard_url.rstrip('/')}/audits/{summary.audit_id}"]
    return "\n".join(lines)


def email_html(summary: AuditSummary, dashboard_url: str = "") -> str:
    color = SEVERITY_COLORS["CRITICAL"] if summary.critical else SEVERITY_COLORS["HIGH"]
    rows = "".join(
        f"<tr><td style='padding:4px 12px;'>{label}</td>"
        f"<td style='padding:4px 12px;font-weight:bold;'>{value}</td></tr>"
        for label, value in (("Critical", summary.critical), ("High", summary.high),
                             ("Medium", summary.medium), ("Low", summary.low),
                             ("Total", summary.total_findings))
    )
    link = ""
    if dashboard_url and summary.audit_id:
        link = (f"<p><a href='{dashboard_url.rstrip('/')}/audits/{summary.audit_id}'>"
                "View audit details</a></p>")
    return (
        "<html><body>"
        f"<h2 style='color:{color};'>[{summary.provider}] Security Audit Complete</h2>"
        f"<p>Security audit completed for <b>{summary.account_name}</b>.</p>"
        f"<table>{rows}</table>"
        f"<p>Risk score: <b>{summary.risk_score:.1f}</b> / 100</p>"
        f"{link}"
        "<hr><p style='color:#888;font-size:11px;'>Cloud Audit Engine</p>"
        "</body></html>"
    )


def slack_payload(summary: AuditSummary) -> Dict[str, Any]:
    """Block Kit message summarising the audit."""
    color = SEVERITY_COLORS["CRITICAL"] if summary.critical else SEVERITY_COLORS["HIGH"]
    return {
        "blocks": [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"[{summary.provider}] Security Audit Complete",
                    "emoji": True,
                },
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn",
                         "text": f"Security audit completed for *{summary.account_name}*"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Critical:*\n{summary.critical}"},
                    {"type": "mrkdwn", "text": f"*High:*\n{summary.high}"},
                    {"type": "mrkdwn", "text": f"*Medium:*\n{summary.medium}"},
                    {"type": "mrkdwn", "text": f"*Low:*\n{summary.low}"},
                ],
            },
            {
                "type": "context",
                "elements": [{
                    "type": "mrkdwn",
                    "text": (f"*Total Findings:* {summary.total_findings} | "
                             f"Risk score: {summary.risk_score:.1f} | Cloud: {summary.provider}"),
                }],
            },
            {"type": "divider"},
        ],
        "attachments": [{
            "color": color,
            "fallback": (f"[{summary.provider}] Audit Complete - {summary.critical} Critical, "
                         f"{summary.high} High findings"),
        }],
    }


def spike_payload(summary: AuditSummary) -> Dict[str, Any]:
    """Incident body for a Spike.sh integration webhook."""
    priority = "p1" if summary.critical else "p2"
    return {
        "title": (f"[{summary.provider}] {summary.account_name}: "
                  f"{summary.critical} critical, {summary.high} high findings"),
        "message": email_body(summary),
        "priority": priority,
        "status": "triggered",
        "metadata": {
            "provider": summary.provider,
            "account": summary.account_name,
            "audit_id": summary.audit_id,
            "critical": summary.critical,
            "high": summary.high,
            "medium": summary.medium,
            "low": summary.low,
            "risk_score": summary.risk_score,
        },
        "timestamp": datetime.utcnow().isoformat(timespec='seconds') + "Z",
    }


# ---------------------------------------------------------------------------
# Senders
# ---------------------------------------------------------------------------

def post_json(url: str, payload: Dict[str, Any], timeout: float = 15):
    """POST a JSON document to a webhook; raises on transport or HTTP errors."""
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        url, data=data, headers={"Content-Type": "application/json"}, method="POST",
    )
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        if resp.status not in (200, 201, 202, 204):
            raise RuntimeError(f"Webhook returned status {resp.status}")


def send_email(smtp: Dict[str, Any], to_addr: str, summary: AuditSummary) -> bool:
    """Send the audit summary email via SMTP."""
    smtp_host = smtp.get("smtp_host", "localhost")
    smtp_port = int(smtp.get("smtp_port", 587))
    smtp_user = smtp.get("smtp_user", "")
    smtp_pass = smtp.get("smtp_pass", "")
    from_addr = smtp.get("from_addr") or "cloudaudit@localhost"
    dashboard_url = smtp.get("dashboard_url", "")
    recipients = [a.strip() for a in to_addr.split(",") if a.strip()]
    if not recipients:
        raise ValueError("No recipient address configured for email channel")

    msg = MIMEMultipart("alternative")
    msg["Subject"] = email_subject(summary)
    msg["From"] = from_addr
    msg["To"] = ", ".join(recipients)
    msg.attach(MIMEText(email_body(summary, dashboard_url), "plain"))
    msg.attach(MIMEText(email_html(summary, dashboard_url), "html"))

    server = smtplib.SMTP(smtp_host, smtp_port, timeout=15)
    try:
        if smtp.get("use_tls", True):
            server.starttls()
        if smtp_user and smtp_pass:
            server.login(smtp_user, smtp_pass)
        server.sendmail(from_addr, recipients, msg.as_string())
    finally:
        server.quit()
    logger.debug("Audit summary email sent to %s", recipients)
    return True


def send_slack(webhook_url: str, summary: AuditSummary, timeout: float = 15) -> bool:
    if not webhook_url:
        raise ValueError("No webhook URL configured for Slack channel")
    post_json(webhook_url, slack_payload(summary), timeout)
    logger.debug("Slack audit summary sent for %s", summary.account_name)
    return True


def send_spike(webhook_url: str, summary: AuditSummary, timeout: float = 15) -> bool:
    if not webhook_url:
        raise ValueError("No webhook URL configured for Spike channel")
    post_json(webhook_url, spike_payload(summary), timeout)
    logger.debug("Spike incident triggered for %s", summary.account_name)
    return True


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class AlertDispatcher:
    """Fan an audit summary out to a user's enabled channels."""

    def __init__(self, store=None, smtp_settings: Optional[Dict[str, Any]] = None,
                 timeout: Optional[float] = None,
                 senders: Optional[Dict[str, Callable[[str, AuditSummary], bool]]] = None):
        self.store = store
        self.smtp_settings = smtp_settings if smtp_settings is not None else config.get_smtp_settings()
        self.timeout = float(timeout if timeout is not None
                             else config.get('notifications.webhook_timeout_seconds', 15))
        self.senders: Dict[str, Callable[[str, AuditSummary], bool]] = {
            "email": lambda target, s: send_email(self.smtp_settings, target, s),
            "slack": lambda target, s: send_slack(target, s, self.timeout),
            "spike": lambda target, s: send_spike(target, s, self.timeout),
        }
        if senders:
            self.senders.update(senders)

    def dispatch(self, summary: AuditSummary, settings: Dict[str, Dict[str, Any]],
                 audit_id: Optional[str] = None,
                 user_id: Optional[str] = None) -> Dict[str, bool]:
        """
        Deliver *summary* to every channel in *settings* that is enabled
        and whose thresholds are crossed.

        Returns {channel: delivered} for the channels attempted.
        """
        audit_id = audit_id or summary.audit_id
        results: Dict[str, bool] = {}

        for channel in VALID_CHANNELS:
            cfg = settings.get(channel)
            if not cfg or not cfg.get('enabled') or not cfg.get('target'):
                continue
            if not should_alert(summary, cfg):
                continue

            error = None
            try:
                # A sender reports failure by raising or returning False
                sent = self.senders[channel](cfg['target'], summary) is not False
                if not sent:
                    error = "Sender reported failure"
            except Exception as exc:
                sent = False
                error = str(exc)[:1000]
                logger.warning("Alert via %s for audit %s failed: %s", channel, audit_id, exc)
            results[channel] = sent

            if self.store is not None:
                try:
                    self.store.record_alert(audit_id, user_id or "", channel,
                                            cfg['target'], sent, error)
                except PersistenceError as exc:
                    logger.error("Could not record %s alert for audit %s: %s",
                                 channel, audit_id, exc)

        if results:
            logger.info("Alerts for audit %s: %s", audit_id,
                        ", ".join(f"{c}={'sent' if ok else 'failed'}" for c, ok in results.items()))
        return results
