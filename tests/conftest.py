"""Shared fixtures for cve_feeds tests."""

import gzip
import sys
from pathlib import Path
from typing import Dict, List

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent))


NVD_HEADER = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    '<nvd xmlns:scap-core="http://scap.nist.gov/schema/scap-core/0.1"'
    ' xmlns:cvss="http://scap.nist.gov/schema/cvss-v2/0.2"'
    ' xmlns:vuln="http://scap.nist.gov/schema/vulnerability/0.4"'
    ' xmlns="http://scap.nist.gov/schema/feed/vulnerability/2.0"'
    ' nvd_xml_version="2.0" pub_date="2016-01-01T03:00:00">\n'
)
NVD_FOOTER = "</nvd>\n"

FULL_ENTRY = """\
  <entry id="CVE-2010-0001">
    <vuln:vulnerable-software-list>
      <vuln:product>cpe:/a:gnu:gzip:1.2.4</vuln:product>
      <vuln:product>cpe:/a:gnu:gzip:1.3.3</vuln:product>
    </vuln:vulnerable-software-list>
    <vuln:cve-id>CVE-2010-0001</vuln:cve-id>
    <vuln:published-datetime>2010-01-29T13:00:01.000-05:00</vuln:published-datetime>
    <vuln:last-modified-datetime>2012-03-27T00:00:00.000-04:00</vuln:last-modified-datetime>
    <vuln:cvss>
      <cvss:base_metrics>
        <cvss:score>6.8</cvss:score>
        <cvss:access-vector>NETWORK</cvss:access-vector>
        <cvss:source>http://nvd.nist.gov</cvss:source>
      </cvss:base_metrics>
    </vuln:cvss>
    <vuln:cwe id="CWE-189"/>
    <vuln:references xml:lang="en" reference_type="UNKNOWN">
      <vuln:source>DEBIAN</vuln:source>
      <vuln:reference href="http://www.debian.org/security/2010/dsa-1974" xml:lang="en">DSA-1974</vuln:reference>
    </vuln:references>
    <vuln:summary>Integer underflow in the unlzw function in unlzw.c in gzip.</vuln:summary>
  </entry>
"""

ID_ONLY_ENTRY = """\
  <entry id="CVE-2010-0002">
    <vuln:cve-id>CVE-2010-0002</vuln:cve-id>
  </entry>
"""

EMPTY_ENTRY = """\
  <entry id="CVE-2010-0003">
  </entry>
"""


def nvd_document(*entries: str) -> str:
    return NVD_HEADER + "".join(entries) + NVD_FOOTER


def id_entry(cve_id: str) -> str:
    return f'  <entry id="{cve_id}">\n    <vuln:cve-id>{cve_id}</vuln:cve-id>\n  </entry>\n'


MITRE_PREAMBLE = [
    "CVE Version 20061101,Date: 20240601,,,,,",
    "Name,Status,Description,References,Phase,Votes,Comments",
    ",,,,,,",
    ",,,,,,",
    ",,,,,,",
    ",,,,,,",
    ",,,,,,",
    ",,,,,,",
    ",,,,,,",
]

MITRE_ROWS = [
    'CVE-1999-0001,Entry,"ip_input.c in BSD-derived TCP/IP implementations allows remote attackers '
    'to cause a denial of service (crash or hang) via crafted packets.",'
    '"BUGTRAQ:19981223 Re: CERT Advisory CA-98.13 - TCP-DENIAL-OF-SERVICE   |   BID:2031",,,',
    'CVE-1999-0002,Candidate,"Buffer overflow in NFS mountd gives root access to remote attackers.",'
    '"CERT:CA-98.12.mountd",Modified (20050101),"ACCEPT(2) Frech, Wall",',
]


@pytest.fixture
def full_entry_xml() -> str:
    return FULL_ENTRY


@pytest.fixture
def sample_nvd_xml() -> str:
    """Three entries: every field, identifier only, nothing."""
    return nvd_document(FULL_ENTRY, ID_ONLY_ENTRY, EMPTY_ENTRY)


@pytest.fixture
def sample_nvd_file(tmp_path: Path, sample_nvd_xml: str) -> Path:
    path = tmp_path / "nvdcve-2.0-2010.xml"
    path.write_text(sample_nvd_xml, encoding="utf-8")
    return path


@pytest.fixture
def year_feeds() -> Dict[int, str]:
    return {
        2010: nvd_document(FULL_ENTRY, ID_ONLY_ENTRY, EMPTY_ENTRY),
        2011: nvd_document(id_entry("CVE-2011-0001"), id_entry("CVE-2011-0002")),
    }


@pytest.fixture
def mitre_lines() -> List[str]:
    return MITRE_PREAMBLE + MITRE_ROWS


@pytest.fixture
def sample_mitre_csv(tmp_path: Path, mitre_lines: List[str]) -> Path:
    path = tmp_path / "allitems.csv"
    path.write_text("\n".join(mitre_lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def gzipped():
    def _gz(text: str) -> bytes:
        return gzip.compress(text.encode("utf-8"))

    return _gz


@pytest.fixture
def sample_config_yaml(tmp_path: Path) -> Path:
    path = tmp_path / "feeds.yaml"
    path.write_text(
        yaml.dump(
            {
                "nvd_feed_url": "https://mirror.example.org/nvd/nvdcve-2.0-{year}.xml.gz",
                "staging_dir": str(tmp_path / "staging"),
            }
        )
    )
    return path


@pytest.fixture
def sample_config_json(tmp_path: Path) -> Path:
    path = tmp_path / "feeds.json"
    path.write_text('{"mitre_csv_url": "https://mirror.example.org/allitems.csv.gz"}')
    return path


class FakeResponse:
    def __init__(self, payload: bytes):
        self.payload = payload

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self) -> None:
        pass

    def iter_content(self, chunk_size: int = 1):
        # Empty chunks are keep-alives and must be skipped.
        yield self.payload[:10]
        yield b""
        yield self.payload[10:]


class FakeSession:
    def __init__(self, payloads: Dict[str, bytes]):
        self.payloads = payloads
        self.urls: List[str] = []

    def get(self, url: str, **kwargs):
        self.urls.append(url)
        return FakeResponse(self.payloads[url])


@pytest.fixture
def fake_session():
    return FakeSession
