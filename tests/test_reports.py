"""Tests for the default DMARC parser and report store."""

import sqlite3

import pytest

from conftest import USER, report_xml
from dmarc_sync.database import DMARC_RECORDS
from dmarc_sync.exceptions import DuplicateReportError, ReportParseError
from dmarc_sync.reports import ReportStore, parse_dmarc_xml


def test_parse_extracts_metadata_and_records():
    report = parse_dmarc_xml(report_xml("R1", "OrgX", domain="example.net", count=5))
    assert report.report_id == "R1"
    assert report.org_name == "OrgX"
    assert report.domain == "example.net"
    assert report.date_begin == 1700000000
    assert report.policy_published["p"] == "none"
    assert report.records[0]["source_ip"] == "192.0.2.1"
    assert report.records[0]["spf"] == "pass"
    assert report.total_messages == 5


def test_parse_handles_namespaced_reports():
    xml = report_xml("R9", "OrgN").replace("<feedback>", '<feedback xmlns="urn:ietf:params:xml:ns:dmarc-2.0">')
    assert parse_dmarc_xml(xml).report_id == "R9"


def test_parse_rejects_malformed_xml():
    with pytest.raises(ReportParseError, match="Malformed"):
        parse_dmarc_xml("<feedback><report_metadata>")


def test_parse_requires_report_id_and_org():
    with pytest.raises(ReportParseError, match="report_id or org_name"):
        parse_dmarc_xml("<feedback><report_metadata><org_name>X</org_name></report_metadata></feedback>")


def test_parse_rejects_other_documents():
    with pytest.raises(ReportParseError, match="Unexpected root"):
        parse_dmarc_xml("<html/>")


def test_store_save_and_find(db):
    store = ReportStore(db)
    xml = report_xml("R1", "OrgX")
    report_pk = store.save_report(parse_dmarc_xml(xml), xml, USER)
    assert store.find_report(USER, "R1", "OrgX") == report_pk
    assert store.find_report(USER, "R1", "OrgY") is None
    assert store.find_report("other", "R1", "OrgX") is None
    assert store.check_duplicate_report("R1", USER)
    assert db[DMARC_RECORDS].count == 1


def test_store_rejects_exact_duplicates(db):
    store = ReportStore(db)
    xml = report_xml("R1", "OrgX")
    store.save_report(parse_dmarc_xml(xml), xml, USER)
    with pytest.raises(DuplicateReportError):
        store.save_report(parse_dmarc_xml(xml), xml, USER)
    assert store.count(USER) == 1


def test_failed_record_insert_leaves_no_report_row(db, monkeypatch):
    store = ReportStore(db)

    def fail(rows):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store.records, "insert_all", fail)
    xml = report_xml("R1", "OrgX")
    with pytest.raises(sqlite3.OperationalError):
        store.save_report(parse_dmarc_xml(xml), xml, USER)
    assert store.find_report(USER, "R1", "OrgX") is None
    assert store.count(USER) == 0
