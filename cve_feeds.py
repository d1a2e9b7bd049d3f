#!/usr/bin/env python3

"""CVE Feeds

Downloads public vulnerability disclosure datasets and normalizes them into tables:

- MITRE CVE list (`allitems.csv.gz`), a flat CSV with a fixed 7-column schema
- NIST NVD yearly XML feeds (`nvdcve-2.0-<year>.xml.gz`, vulnerability schema 0.4),
  one row per `<entry>` with 19 fixed columns

NVD entries are schema-varying: any field except the CVE identifier may be missing,
and most fields carry nested structure (CVSS metrics, references, CPE lists). Each
such field is stored as a compact JSON encoding of its XML subtree, so every row has
the same columns no matter which subtrees were present. The `cwe` column is the
exception: it is collapsed to a plain `CWE-<n>` string or `None`.

Staging layout (relative to the staging directory):
- `cve/mitre/allitems.csv`
- `cve/nist/nvdcve-2.0-<year>.xml`
"""

import argparse
import csv
import datetime as dt
import gzip
import json
import shutil
import tempfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd
import requests
import yaml
from tenacity import retry, stop_after_attempt, wait_exponential

MITRE_CSV_URL = "https://cve.mitre.org/data/downloads/allitems.csv.gz"
# NVD 2.0 XML feeds, one gzipped file per CVE year
NVD_XML_FEED_URL = "https://nvd.nist.gov/feeds/xml/cve/2.0/nvdcve-2.0-{year}.xml.gz"

DEFAULT_HTTP_TIMEOUT = (10, 300)  # (connect, read); yearly feeds are large

MIN_NIST_YEAR = 2002
MITRE_PREAMBLE_LINES = 9

# (column, xml tag) in table order. Tags are local names under the
# http://scap.nist.gov/schema/vulnerability/0.4 namespace.
NIST_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("osvdb_ext", "osvdb-ext"),
    ("vulnerable_configuration", "vulnerable-configuration"),
    ("vulnerable_software_list", "vulnerable-software-list"),
    ("cve_id", "cve-id"),
    ("discovered_datetime", "discovered-datetime"),
    ("disclosure_datetime", "disclosure-datetime"),
    ("exploit_publish_datetime", "exploit-publish-datetime"),
    ("published_datetime", "published-datetime"),
    ("last_modified_datetime", "last-modified-datetime"),
    ("cvss", "cvss"),
    ("security_protection", "security-protection"),
    ("assessment_check", "assessment_check"),
    ("cwe", "cwe"),
    ("references", "references"),
    ("fix_action", "fix_action"),
    ("scanner", "scanner"),
    ("summary", "summary"),
    ("technical_description", "technical_description"),
    ("attack_scenario", "attack_scenario"),
)
NIST_COLUMNS: Tuple[str, ...] = tuple(column for column, _ in NIST_FIELDS)
NIST_ID_COLUMN = "cve_id"
NIST_CWE_COLUMN = "cwe"

MITRE_COLUMNS: Tuple[str, ...] = (
    "cve",
    "status",
    "description",
    "references",
    "phase",
    "votes",
    "comments",
)
MITRE_CATEGORICAL_COLUMNS = ("status",)

# Stands in for a missing field so the encoding is always a JSON object.
_PLACEHOLDER_XML = "<xml></xml>"

# Neither character can start an XML name, so these keys never collide with tags.
ATTRIBUTE_PREFIX = "@"
TEXT_KEY = "#text"

Row = Dict[str, Optional[str]]
XmlSource = Union[str, Path, IO[bytes], ET.ElementTree]


class FeedParseError(RuntimeError):
    """A staged feed could not be parsed into a table."""


@dataclass(frozen=True)
class FeedsConfig:
    mitre_csv_url: str = MITRE_CSV_URL
    nvd_feed_url: str = NVD_XML_FEED_URL
    staging_dir: Optional[Path] = None

    def nvd_url_for(self, year: int) -> str:
        return self.nvd_feed_url.format(year=year)


def _str_setting(raw: Dict[str, Any], key: str, default: str) -> str:
    value = raw.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def load_config(path: Path) -> FeedsConfig:
    """Load feed settings from a YAML or JSON file.

    Recognized keys: `mitre_csv_url`, `nvd_feed_url` (must contain `{year}`) and
    `staging_dir`. Missing or blank values keep their defaults.
    """
    suffix = path.suffix.lower()

    with path.open("r", encoding="utf-8") as f:
        content = f.read()

    if suffix in (".yaml", ".yml"):
        raw = yaml.safe_load(content) or {}
    elif suffix == ".json":
        raw = json.loads(content)
    else:
        try:
            raw = yaml.safe_load(content) or {}
        except yaml.YAMLError:
            raw = json.loads(content)

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")

    nvd_feed_url = _str_setting(raw, "nvd_feed_url", NVD_XML_FEED_URL)
    if "{year}" not in nvd_feed_url:
        raise ValueError(f"{path}: nvd_feed_url must contain a {{year}} placeholder")

    staging = raw.get("staging_dir")
    return FeedsConfig(
        mitre_csv_url=_str_setting(raw, "mitre_csv_url", MITRE_CSV_URL),
        nvd_feed_url=nvd_feed_url,
        staging_dir=Path(staging).expanduser() if isinstance(staging, str) and staging.strip() else None,
    )


def _requests_session() -> requests.Session:
    s = requests.Session()
    s.headers.update(
        {
            "User-Agent": "cve-feeds/0.1",
            # NVD feeds are served as application/x-gzip
            "Accept": "*/*",
        }
    )
    return s


@retry(stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, min=1, max=30))
def download_file(session: requests.Session, url: str, dest: Path) -> Path:
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_suffix(dest.suffix + ".tmp")
    with session.get(url, stream=True, timeout=DEFAULT_HTTP_TIMEOUT) as r:
        r.raise_for_status()
        with tmp.open("wb") as f:
            for chunk in r.iter_content(chunk_size=1024 * 1024):
                if chunk:
                    f.write(chunk)
    tmp.replace(dest)
    return dest


def prepare_staging_dirs(root: Path) -> Path:
    """Create `cve/mitre` and `cve/nist` under `root` and return `root/cve`."""
    base = root / "cve"
    (base / "mitre").mkdir(parents=True, exist_ok=True)
    (base / "nist").mkdir(parents=True, exist_ok=True)
    return base


def gunzip_file(path: Path) -> Path:
    """Decompress `x.gz` into `x` (overwriting it) and remove the archive."""
    target = path.with_suffix("")
    tmp = target.with_suffix(target.suffix + ".tmp")
    try:
        with gzip.open(path, "rb") as src, tmp.open("wb") as dst:
            shutil.copyfileobj(src, dst)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise
    tmp.replace(target)
    path.unlink()
    return target


def extract_data_files(root: Path) -> List[Path]:
    """Decompress every `*.gz` archive under `root/cve`, recursively."""
    base = root / "cve"
    if not base.is_dir():
        return []
    return [gunzip_file(p) for p in sorted(base.rglob("*.gz")) if p.is_file()]


def stage_nvd_year(
    session: requests.Session,
    year: int,
    staging_dir: Path,
    config: FeedsConfig,
) -> Path:
    base = prepare_staging_dirs(staging_dir)
    url = config.nvd_url_for(year)
    archive = base / "nist" / f"nvdcve-2.0-{year}.xml.gz"
    print(f"  Downloading NVD feed for {year}...")
    download_file(session, url, archive)
    return gunzip_file(archive)


def stage_mitre(session: requests.Session, staging_dir: Path, config: FeedsConfig) -> Path:
    base = prepare_staging_dirs(staging_dir)
    print("  Downloading MITRE CVE list...")
    download_file(session, config.mitre_csv_url, base / "mitre" / "allitems.csv.gz")
    extract_data_files(staging_dir)
    return base / "mitre" / "allitems.csv"


def _local_name(tag: str) -> str:
    # "{namespace}name" -> "name"
    return tag.rsplit("}", 1)[-1]


def _is_element(node: Any) -> bool:
    return isinstance(node, ET.Element) and isinstance(node.tag, str)


def find_child(node: ET.Element, tag: str) -> Optional[ET.Element]:
    """Return the first direct child of `node` whose local name is `tag`."""
    if not _is_element(node):
        raise FeedParseError(f"Cannot read children of {node!r}: not an XML element")
    for child in node:
        if isinstance(child.tag, str) and _local_name(child.tag) == tag:
            return child
    return None


def _add_member(members: Dict[str, Any], key: str, value: Any) -> None:
    # Lists only ever come from repeated keys, never from a single child.
    if key not in members:
        members[key] = value
    elif isinstance(members[key], list):
        members[key].append(value)
    else:
        members[key] = [members[key], value]


def node_to_structure(node: ET.Element) -> Any:
    """Convert an XML subtree into plain dicts, lists and strings.

    Leaf elements without attributes become their text (`{}` when blank). Other
    elements become a mapping: attributes under `@<name>`, children under their
    local name, and every non-blank text node (including text following a child)
    under `#text`. Repeated keys collect into lists in document order.
    """
    children = [c for c in node if isinstance(c.tag, str)]

    if not children and not node.attrib:
        return node.text if node.text and node.text.strip() else {}

    members: Dict[str, Any] = {}
    for name, value in node.attrib.items():
        _add_member(members, ATTRIBUTE_PREFIX + _local_name(name), value)
    if node.text and node.text.strip():
        _add_member(members, TEXT_KEY, node.text)
    for child in node:
        if isinstance(child.tag, str):
            _add_member(members, _local_name(child.tag), node_to_structure(child))
        if child.tail and child.tail.strip():
            _add_member(members, TEXT_KEY, child.tail)
    return members


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def node_to_json(node: Optional[ET.Element]) -> str:
    if node is None:
        node = ET.fromstring(_PLACEHOLDER_XML)
    return _to_json(node_to_structure(node))


def node_to_text(node: Optional[ET.Element]) -> str:
    if node is None:
        return ""
    return "".join(node.itertext())


def empty_nist_table() -> pd.DataFrame:
    return pd.DataFrame({column: pd.Series(dtype=object) for column in NIST_COLUMNS})


def normalize_entry(entry: ET.Element) -> Row:
    """Build one table row from an NVD `<entry>` element.

    Every column in `NIST_COLUMNS` is present in the result. The identifier is
    plain text; all other fields are JSON encodings of the matching child subtree,
    `{}` when the child is missing.
    """
    row: Row = {}
    for column, tag in NIST_FIELDS:
        child = find_child(entry, tag)
        if column == NIST_ID_COLUMN:
            row[column] = node_to_text(child)
        else:
            row[column] = node_to_json(child)
    return row


def collapse_cwe(encoded: Optional[str]) -> Optional[str]:
    """Reduce an encoded CWE field to a single value.

    `{}`/`[]` becomes `None`; a collection holding exactly one member becomes that
    member as text. Collections with several members are returned unchanged.
    """
    if encoded is None:
        return None
    value = json.loads(encoded)
    if isinstance(value, (dict, list)):
        members = list(value.values()) if isinstance(value, dict) else value
        if not members:
            return None
        if len(members) > 1:
            return encoded
        value = members[0]
    return value if isinstance(value, str) else _to_json(value)


def _parse_xml(source: XmlSource) -> ET.ElementTree:
    if isinstance(source, ET.ElementTree):
        return source
    try:
        return ET.parse(source)
    except ET.ParseError as e:
        raise FeedParseError(f"Malformed NVD feed {source!r}: {e}") from e


def parse_nvd_feed(source: XmlSource) -> pd.DataFrame:
    """Parse one staged NVD XML feed into a table with `NIST_COLUMNS`.

    Each direct child of the document root is treated as one vulnerability entry;
    rows keep document order.
    """
    root = _parse_xml(source).getroot()
    rows = [normalize_entry(entry) for entry in root if isinstance(entry.tag, str)]
    df = pd.DataFrame.from_records(rows, columns=list(NIST_COLUMNS)).astype(object)
    df[NIST_CWE_COLUMN] = pd.Series(
        [collapse_cwe(v) for v in df[NIST_CWE_COLUMN]], index=df.index, dtype=object
    )
    return df


def valid_nist_years() -> range:
    """Years with an NVD feed: 2002 through the current year, inclusive."""
    return range(MIN_NIST_YEAR, dt.datetime.now().year + 1)


def get_nist_vulns(
    years: Optional[Iterable[int]] = None,
    session: Optional[requests.Session] = None,
    staging_dir: Optional[Path] = None,
    config: Optional[FeedsConfig] = None,
) -> pd.DataFrame:
    """Download and parse the NVD feeds for `years` (default: current year).

    If any requested year falls outside `valid_nist_years()` nothing is fetched and
    an empty table is returned; callers detect this by the table being empty.
    Years are processed in the given order, duplicates included, and rows carry no
    year column.
    """
    years_list = [dt.datetime.now().year] if years is None else list(years)
    valid = valid_nist_years()
    if any(year not in valid for year in years_list):
        return empty_nist_table()

    config = config or FeedsConfig()
    session = session or _requests_session()
    staging_dir = staging_dir or config.staging_dir
    root = staging_dir if staging_dir is not None else Path(tempfile.mkdtemp(prefix="cve_feeds_"))

    frames: List[pd.DataFrame] = []
    try:
        for year in years_list:
            xml_path = stage_nvd_year(session, year, root, config)
            df = parse_nvd_feed(xml_path)
            print(f"    Loaded {len(df)} entries from NVD {year} feed")
            frames.append(df)
    finally:
        if staging_dir is None:
            shutil.rmtree(root, ignore_errors=True)

    if not frames:
        return empty_nist_table()
    return pd.concat(frames, ignore_index=True)


def _read_mitre_records(f: IO[str], path: Path) -> List[List[str]]:
    for n in range(MITRE_PREAMBLE_LINES):
        if not f.readline():
            raise FeedParseError(
                f"{path}: expected {MITRE_PREAMBLE_LINES} preamble lines, file ended after {n}"
            )
    records: List[List[str]] = []
    for record in csv.reader(f):
        if not record:
            continue
        if len(record) != len(MITRE_COLUMNS):
            raise FeedParseError(
                f"{path}: expected {len(MITRE_COLUMNS)} fields, got {len(record)} "
                f"(record {len(records) + 1})"
            )
        records.append(record)
    return records


def parse_mitre_csv(path: Path, encoding: str = "utf-8") -> pd.DataFrame:
    """Parse the MITRE `allitems.csv` export.

    The first `MITRE_PREAMBLE_LINES` lines are a banner, not CSV. Every remaining
    non-blank record must have exactly one field per column in `MITRE_COLUMNS`.
    Bytes that do not decode under `encoding` raise `FeedParseError`.
    """
    try:
        with Path(path).open("r", encoding=encoding, newline="") as f:
            records = _read_mitre_records(f, path)
    except UnicodeDecodeError as e:
        raise FeedParseError(f"{path}: not valid {encoding}: {e}") from e

    df = pd.DataFrame.from_records(records, columns=list(MITRE_COLUMNS))
    df = df.astype({column: object for column in MITRE_COLUMNS})
    for column in MITRE_CATEGORICAL_COLUMNS:
        df[column] = df[column].astype("category")
    return df


def get_cve_data(
    session: Optional[requests.Session] = None,
    staging_dir: Optional[Path] = None,
    config: Optional[FeedsConfig] = None,
) -> pd.DataFrame:
    """Download and parse the MITRE CVE list."""
    config = config or FeedsConfig()
    session = session or _requests_session()
    staging_dir = staging_dir or config.staging_dir
    root = staging_dir if staging_dir is not None else Path(tempfile.mkdtemp(prefix="cve_feeds_"))
    try:
        csv_path = stage_mitre(session, root, config)
        df = parse_mitre_csv(csv_path)
    finally:
        if staging_dir is None:
            shutil.rmtree(root, ignore_errors=True)
    print(f"    Loaded {len(df)} CVEs from MITRE list")
    return df


def write_table(path: Path, df: pd.DataFrame) -> None:
    """Write `df` as CSV, or as JSON records when `path` ends in `.json`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    if path.suffix.lower() == ".json":
        df.to_json(tmp, orient="records", indent=2, force_ascii=False)
    else:
        df.to_csv(tmp, index=False)
    tmp.replace(path)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Download and normalize CVE feeds")
    parser.add_argument("source", choices=("nist", "mitre"), help="Feed to fetch")
    parser.add_argument(
        "--years",
        type=int,
        nargs="+",
        default=None,
        help=f"NVD feed years ({MIN_NIST_YEAR} through the current year). Default: current year",
    )
    parser.add_argument("--config", default=None, help="Path to a YAML or JSON settings file")
    parser.add_argument(
        "--staging-dir",
        default=None,
        help="Keep downloaded files here instead of a temporary directory",
    )
    parser.add_argument("--out", default=None, help="Output path (.csv or .json)")
    args = parser.parse_args(argv)

    config = load_config(Path(args.config)) if args.config else FeedsConfig()
    staging_dir = Path(args.staging_dir) if args.staging_dir else None
    session = _requests_session()

    if args.source == "nist":
        print("Downloading NVD feeds...")
        df = get_nist_vulns(args.years, session=session, staging_dir=staging_dir, config=config)
        if df.empty and args.years:
            valid = valid_nist_years()
            bad = [y for y in args.years if y not in valid]
            if bad:
                print(f"Warning: years outside {valid.start}..{valid.stop - 1}: {bad}; nothing fetched")
        out = Path(args.out or "data/nist_vulns.csv")
    else:
        print("Downloading MITRE CVE list...")
        df = get_cve_data(session=session, staging_dir=staging_dir, config=config)
        out = Path(args.out or "data/mitre_cves.csv")

    write_table(out, df)
    print(f"Wrote {len(df)} rows to {out}")
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
