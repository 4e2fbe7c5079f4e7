import re
from datetime import datetime, timezone

from journalflow.core.doi_generator import generate_doi_candidate, generate_manuscript_code

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def test_doi_candidate_format():
    doi = generate_doi_candidate(prefix="10.1234", now=NOW)
    epoch_ms = int(NOW.timestamp() * 1000)
    assert re.fullmatch(rf"10\.1234/csmr\.{epoch_ms}\.[0-9a-z]{{8}}", doi)


def test_doi_candidate_strips_trailing_slash_and_blank_prefix():
    assert generate_doi_candidate(prefix="10.5555/", now=NOW).startswith("10.5555/csmr.")
    assert generate_doi_candidate(prefix="", now=NOW).startswith("10.1234/csmr.")


def test_doi_candidates_are_random():
    values = {generate_doi_candidate(now=NOW) for _ in range(20)}
    assert len(values) > 1


def test_manuscript_code_format():
    code = generate_manuscript_code(prefix="CSMR", now=NOW)
    assert re.fullmatch(r"CSMR-2026-[0-9A-Z]{6}", code)
