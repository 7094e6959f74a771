"""Default DMARC report parser and report store.

Both are replaceable collaborators of the sync orchestrator; the orchestrator
only relies on ``parse(xml) -> ReportData`` and on ``find_report`` /
``save_report`` of the store.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Optional

import sqlite_utils

from .database import DMARC_RECORDS, DMARC_REPORTS
from .exceptions import DuplicateReportError, ReportParseError
from .utils import isoformat_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReportData:
    report_id: str
    org_name: str
    email: Optional[str] = None
    date_begin: Optional[int] = None
    date_end: Optional[int] = None
    domain: Optional[str] = None
    policy_published: dict[str, Any] = field(default_factory=dict)
    records: list[dict[str, Any]] = field(default_factory=list)

    @property
    def total_messages(self) -> int:
        return sum(record.get("count", 0) for record in self.records)


def _strip_namespaces(root: ET.Element) -> ET.Element:
    for element in root.iter():
        if isinstance(element.tag, str) and "}" in element.tag:
            element.tag = element.tag.split("}", 1)[1]
    return root


def _text(parent: Optional[ET.Element], path: str) -> Optional[str]:
    if parent is None:
        return None
    node = parent.find(path)
    if node is None or node.text is None:
        return None
    return node.text.strip() or None


def _int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def parse_dmarc_xml(xml: str) -> ReportData:
    try:
        root = _strip_namespaces(ET.fromstring(xml.strip()))
    except ET.ParseError as exc:
        raise ReportParseError(f"Malformed XML: {exc}") from exc

    if root.tag != "feedback":
        raise ReportParseError(f"Unexpected root element <{root.tag}>")

    metadata = root.find("report_metadata")
    report_id = _text(metadata, "report_id")
    org_name = _text(metadata, "org_name")
    if not report_id or not org_name:
        raise ReportParseError("Report is missing report_id or org_name")

    policy = root.find("policy_published")
    policy_published = {child.tag: (child.text or "").strip() for child in policy} if policy is not None else {}

    records = []
    for record in root.findall("record"):
        row = record.find("row")
        records.append(
            {
                "source_ip": _text(row, "source_ip"),
                "count": _int(_text(row, "count")) or 0,
                "disposition": _text(row, "policy_evaluated/disposition"),
                "dkim": _text(row, "policy_evaluated/dkim"),
                "spf": _text(row, "policy_evaluated/spf"),
                "header_from": _text(record, "identifiers/header_from"),
            }
        )

    return ReportData(
        report_id=report_id,
        org_name=org_name,
        email=_text(metadata, "email"),
        date_begin=_int(_text(metadata, "date_range/begin")),
        date_end=_int(_text(metadata, "date_range/end")),
        domain=policy_published.get("domain"),
        policy_published=policy_published,
        records=records,
    )


class ReportStore:
    """Persist parsed reports; (user, report id, org name) is unique."""

    def __init__(self, db: sqlite_utils.Database) -> None:
        self.db = db
        self.reports = db[DMARC_REPORTS]
        self.records = db[DMARC_RECORDS]

    def find_report(self, user_id: str, report_id: str, org_name: str) -> Optional[int]:
        rows = list(
            self.reports.rows_where(
                "user_id = ? and report_id = ? and org_name = ?",
                [user_id, report_id, org_name],
                select="id",
            )
        )
        return rows[0]["id"] if rows else None

    def check_duplicate_report(self, report_id: str, user_id: str) -> bool:
        return self.reports.count_where("user_id = ? and report_id = ?", [user_id, report_id]) > 0

    def save_report(self, report: ReportData, raw_xml: str, user_id: str) -> int:
        try:
            self.reports.insert(
                {
                    "user_id": user_id,
                    "report_id": report.report_id,
                    "org_name": report.org_name,
                    "email": report.email,
                    "domain": report.domain,
                    "date_begin": report.date_begin,
                    "date_end": report.date_end,
                    "policy": json.dumps(report.policy_published),
                    "record_count": len(report.records),
                    "total_messages": report.total_messages,
                    "raw_xml": raw_xml,
                    "created_at": isoformat_utc(utcnow()),
                }
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateReportError(
                f"Report {report.report_id} from {report.org_name} already stored"
            ) from exc
        report_pk = self.reports.last_pk
        if report.records:
            try:
                self.records.insert_all([{"report_pk": report_pk, **record} for record in report.records])
            except Exception:
                # A report row without its records would read as already imported.
                logger.error("Storing records of report %s failed; removing the report row", report.report_id)
                self.records.delete_where("report_pk = ?", [report_pk])
                self.reports.delete(report_pk)
                raise
        logger.info("Stored report %s from %s (%s records)", report.report_id, report.org_name, len(report.records))
        return report_pk

    def count(self, user_id: str) -> int:
        return self.reports.count_where("user_id = ?", [user_id])
