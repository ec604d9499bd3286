from __future__ import annotations

import codecs
import html
import io
import logging
import re
import zipfile
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Dict, Iterator, List, Sequence, Tuple
from xml.etree import ElementTree as ET

import numpy as np

DOCUMENT_SUFFIX = ".kml"
STATION_CODE_PATTERN = re.compile(r"^[A-Za-z0-9]{4,5}$")
LOGGER = logging.getLogger("mosmix_forecast.bulletin")

_NUMBER_PATTERN = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")
_XML_ENCODING_PATTERN = re.compile(rb"^\s*<\?xml[^>]*encoding\s*=\s*[\"']([A-Za-z0-9._-]+)[\"']")
_XML_DECLARED_ENCODING_PATTERN = re.compile(r"^(\s*<\?xml[^>]*?)\s+encoding\s*=\s*[\"'][^\"']*[\"']")
_BYTE_ORDER_MARKS = (
    (codecs.BOM_UTF8, "utf-8"),
    (codecs.BOM_UTF16_LE, "utf-16-le"),
    (codecs.BOM_UTF16_BE, "utf-16-be"),
)
_RAW_PREFIX = r"(?:[\w.-]+:)?"
_RAW_ATTRIBUTE_PATTERN = re.compile(r"([\w.:-]+)\s*=\s*(?:\"([^\"]*)\"|'([^']*)')")
_RAW_TIME_STEP_PATTERN = re.compile(
    rf"<{_RAW_PREFIX}time[-_]?step\b[^>]*>([^<]*)</{_RAW_PREFIX}time[-_]?step\s*>",
    re.IGNORECASE,
)
_RAW_VALUE_PATTERN = re.compile(
    rf"<{_RAW_PREFIX}values?\b[^>]*>(.*?)</{_RAW_PREFIX}values?\s*>",
    re.IGNORECASE | re.DOTALL,
)


class BulletinError(RuntimeError):
    """Base class for failures that make a bulletin unusable for one run."""


class BulletinFetchError(BulletinError):
    """Raised when the bulletin cannot be retrieved."""


class BulletinArchiveError(BulletinError):
    """Raised when no usable document is found inside the container."""


class BulletinParseError(BulletinError):
    """Raised when the bulletin markup is not well-formed."""


class NoTimeAxisFound(BulletinError):
    """Raised when no valid timestep sequence can be discovered."""


@dataclass(frozen=True, eq=False)
class ParameterSeries:
    code: str
    values: np.ndarray
    unit: str | None = None

    def __len__(self) -> int:
        return int(self.values.size)

    def with_values(self, values: np.ndarray) -> "ParameterSeries":
        return ParameterSeries(code=self.code, values=values, unit=self.unit)


ParameterSet = Dict[str, ParameterSeries]


@dataclass(frozen=True)
class TimeAxis:
    """Forecast instants plus their position in the document's step list.

    ``positions[i]`` is the index of ``instants[i]`` among the ``step_count``
    raw steps, so a dropped or reordered step never shifts series values onto
    the wrong instant.
    """

    instants: Tuple[datetime, ...]
    positions: Tuple[int, ...]
    step_count: int

    def __len__(self) -> int:
        return len(self.instants)

    def aligned(self) -> "TimeAxis":
        count = len(self.instants)
        return TimeAxis(instants=self.instants, positions=tuple(range(count)), step_count=count)

    def take(self, start: int, stop: int) -> "TimeAxis":
        instants = self.instants[start:stop]
        return TimeAxis(instants=instants, positions=tuple(range(len(instants))), step_count=len(instants))


@dataclass(frozen=True, eq=False)
class ExtractionOutcome:
    parameters: ParameterSet
    strategy: str | None
    counts: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, eq=False)
class Bulletin:
    time_axis: TimeAxis
    parameters: ParameterSet
    strategy: str | None
    strategy_counts: Dict[str, int]
    station_name: str | None


# Tree helpers ---------------------------------------------------------------
def local_name(tag: object) -> str:
    """Namespace-free, case-folded tag or attribute name.

    ``{uri}ForecastTimeSteps``, ``dwd:ForecastTimeSteps`` and
    ``forecast-time-steps`` all compare equal.
    """
    if not isinstance(tag, str):
        return ""
    name = tag.rsplit("}", 1)[-1].rsplit(":", 1)[-1]
    return name.replace("-", "").replace("_", "").lower()


def iter_nodes(root: ET.Element | None, name: str | None = None) -> Iterator[ET.Element]:
    if root is None:
        return
    wanted = local_name(name) if name else None
    for node in root.iter():
        if wanted is None or local_name(node.tag) == wanted:
            yield node


def child_nodes(node: ET.Element, name: str) -> List[ET.Element]:
    wanted = local_name(name)
    return [child for child in node if local_name(child.tag) == wanted]


def attribute(node: ET.Element, *names: str) -> str | None:
    for wanted in names:
        key = local_name(wanted)
        for attr_name, value in node.attrib.items():
            if local_name(attr_name) == key and value.strip():
                return value.strip()
    return None


def node_text(node: ET.Element) -> str:
    return "".join(node.itertext()).strip()


def parse_values(raw: str | None) -> np.ndarray:
    """Whitespace-delimited numbers; any non-numeric token becomes NaN."""
    if not raw:
        return np.empty(0, dtype=np.float64)
    tokens = raw.split()
    return np.array(
        [float(token) if _NUMBER_PATTERN.match(token) else np.nan for token in tokens],
        dtype=np.float64,
    )


def _values_from_nodes(nodes: Sequence[ET.Element]) -> np.ndarray:
    chunks = [parse_values(node_text(node)) for node in nodes]
    if not chunks:
        return np.empty(0, dtype=np.float64)
    return np.concatenate(chunks)


def _raw_attribute(attrs: str, *names: str) -> str | None:
    found: Dict[str, str] = {}
    for match in _RAW_ATTRIBUTE_PATTERN.finditer(attrs or ""):
        value = match.group(2) if match.group(2) is not None else match.group(3)
        found.setdefault(local_name(match.group(1)), value.strip())
    for wanted in names:
        value = found.get(local_name(wanted))
        if value:
            return value
    return None


def _raw_values(body: str) -> np.ndarray:
    chunks = [parse_values(html.unescape(part)) for part in _RAW_VALUE_PATTERN.findall(body or "")]
    if not chunks:
        return np.empty(0, dtype=np.float64)
    return np.concatenate(chunks)


# Document handling ----------------------------------------------------------
def _strip_declared_encoding(text: str) -> str:
    # The declared byte encoding no longer applies to decoded text.
    return _XML_DECLARED_ENCODING_PATTERN.sub(r"\1", text, count=1)


def decode_document(raw: bytes) -> str:
    for bom, encoding in _BYTE_ORDER_MARKS:
        if raw.startswith(bom):
            return _strip_declared_encoding(raw[len(bom) :].decode(encoding, errors="replace"))
    match = _XML_ENCODING_PATTERN.match(raw)
    encoding = match.group(1).decode("ascii") if match else "utf-8"
    try:
        return raw.decode(encoding, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def extract_single_document(payload: bytes, suffix: str = DOCUMENT_SUFFIX) -> str:
    """Decompress the one markup document of interest from a KMZ container."""
    try:
        with zipfile.ZipFile(io.BytesIO(payload)) as archive:
            entries = [info for info in archive.infolist() if not info.is_dir()]
            if not entries:
                raise BulletinArchiveError("Bulletin archive contains no documents")
            preferred = [info for info in entries if info.filename.lower().endswith(suffix.lower())]
            entry = (preferred or entries)[0]
            if not preferred:
                LOGGER.warning("No %s entry in bulletin archive, using %s", suffix, entry.filename)
            raw = archive.read(entry)
    except BulletinArchiveError:
        raise
    # zipfile raises RuntimeError for encrypted entries and NotImplementedError
    # for unsupported compression methods.
    except (zipfile.BadZipFile, EOFError, OSError, zlib.error, RuntimeError) as exc:
        raise BulletinArchiveError(f"Bulletin archive is unreadable: {exc}") from exc
    return decode_document(raw)


def parse_markup(text: str) -> ET.Element:
    try:
        return ET.fromstring(text)
    except ET.ParseError as exc:
        raise BulletinParseError(f"Bulletin markup is not well-formed: {exc}") from exc


# Time axis ------------------------------------------------------------------
def parse_timestamp(value: str, tz: tzinfo = timezone.utc) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    if raw[-1] in "Zz":
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


def _time_steps_from_tree(tree: ET.Element | None) -> List[str]:
    steps = [node_text(node) for node in iter_nodes(tree, "TimeStep")]
    if steps:
        return steps
    # Older products pack all steps into the container's text.
    for container in iter_nodes(tree, "ForecastTimeSteps"):
        if len(container) == 0:
            steps.extend(node_text(container).split())
    return steps


def _track_times(tree: ET.Element | None) -> List[str]:
    steps: List[str] = []
    for track in iter_nodes(tree, "Track"):
        steps.extend(node_text(node) for node in child_nodes(track, "when"))
    return steps


def resolve_time_axis(tree: ET.Element | None, text: str | None, tz: tzinfo = timezone.utc) -> TimeAxis:
    steps = _time_steps_from_tree(tree)
    source = "time-step"
    if not steps:
        steps = _track_times(tree)
        source = "track"
    if not steps and text:
        steps = [html.unescape(step) for step in _RAW_TIME_STEP_PATTERN.findall(text)]
        source = "raw-text"

    valid: List[Tuple[datetime, int]] = []
    for position, step in enumerate(steps):
        instant = parse_timestamp(step, tz)
        if instant is not None:
            valid.append((instant, position))
    if not valid:
        raise NoTimeAxisFound(f"No valid forecast time steps found ({len(steps)} candidates)")

    dropped = len(steps) - len(valid)
    if dropped:
        LOGGER.warning("Dropped %d unparseable time steps", dropped)
    valid.sort(key=lambda item: item[0])
    LOGGER.debug("Resolved time axis steps=%d source=%s", len(valid), source)
    return TimeAxis(
        instants=tuple(instant for instant, _ in valid),
        positions=tuple(position for _, position in valid),
        step_count=len(steps),
    )


# Parameter extraction -------------------------------------------------------
class ExtractionStrategy:
    name = "base"

    def extract(self, tree: ET.Element | None, text: str | None) -> ParameterSet:
        raise NotImplementedError


class TabularArrayStrategy(ExtractionStrategy):
    """``ExtendedData/SimpleArrayData name=...`` with ``value`` children."""

    name = "tabular-array"

    def extract(self, tree, text):
        found: ParameterSet = {}
        for section in iter_nodes(tree, "ExtendedData"):
            for node in iter_nodes(section, "SimpleArrayData"):
                code = attribute(node, "name", "id")
                if not code or code in found:
                    continue
                value_nodes = child_nodes(node, "value")
                values = _values_from_nodes(value_nodes) if value_nodes else parse_values(node_text(node))
                found[code] = ParameterSeries(code=code, values=values, unit=attribute(node, "unit", "units"))
        return found


class TimeSeriesStrategy(ExtractionStrategy):
    """``Forecast/TimeSeries/Parameter id=...`` layout."""

    name = "time-series"

    def extract(self, tree, text):
        found: ParameterSet = {}
        for forecast in iter_nodes(tree, "Forecast"):
            for series_node in child_nodes(forecast, "TimeSeries"):
                for node in iter_nodes(series_node, "Parameter"):
                    code = attribute(node, "id", "name")
                    if not code or code in found:
                        continue
                    packed = attribute(node, "values")
                    if packed is not None:
                        values = parse_values(packed)
                    else:
                        values = _values_from_nodes(child_nodes(node, "values") or child_nodes(node, "value"))
                    found[code] = ParameterSeries(code=code, values=values, unit=attribute(node, "unit", "units"))
        return found


class ForecastElementStrategy(ExtractionStrategy):
    """``Forecast elementName=...`` with a ``value`` child, as in MOSMIX KML."""

    name = "forecast-element"

    def extract(self, tree, text):
        found: ParameterSet = {}
        for forecast in iter_nodes(tree, "Forecast"):
            code = attribute(forecast, "elementName")
            if not code:
                name_nodes = child_nodes(forecast, "elementName")
                code = node_text(name_nodes[0]) if name_nodes else None
            value_nodes = child_nodes(forecast, "value")
            if not code or not value_nodes or code in found:
                continue
            found[code] = ParameterSeries(code=code, values=_values_from_nodes(value_nodes))
        return found


class RawTextStrategy(ExtractionStrategy):
    """Regex scans of the markup text for the three tree layouts, in order."""

    name = "raw-text"

    _array_pattern = re.compile(
        rf"<{_RAW_PREFIX}simple[-_]?array[-_]?data\b([^>]*)>(.*?)</{_RAW_PREFIX}simple[-_]?array[-_]?data\s*>",
        re.IGNORECASE | re.DOTALL,
    )
    _series_pattern = re.compile(
        rf"<{_RAW_PREFIX}time[-_]?series\b[^>]*>(.*?)</{_RAW_PREFIX}time[-_]?series\s*>",
        re.IGNORECASE | re.DOTALL,
    )
    _parameter_pattern = re.compile(
        rf"<{_RAW_PREFIX}parameter\b([^>]*?)(?:/>|>(.*?)</{_RAW_PREFIX}parameter\s*>)",
        re.IGNORECASE | re.DOTALL,
    )
    _forecast_pattern = re.compile(
        rf"<{_RAW_PREFIX}forecast\b([^>]*)>(.*?)</{_RAW_PREFIX}forecast\s*>",
        re.IGNORECASE | re.DOTALL,
    )
    _element_name_pattern = re.compile(
        rf"<{_RAW_PREFIX}element[-_]?name\b[^>]*>([^<]*)<",
        re.IGNORECASE,
    )

    def extract(self, tree, text):
        if not text:
            return {}
        for scan in (self._scan_arrays, self._scan_time_series, self._scan_forecasts):
            found = scan(text)
            if found:
                LOGGER.debug("Raw-text scan %s found %d parameters", scan.__name__, len(found))
                return found
        return {}

    def _scan_arrays(self, text: str) -> ParameterSet:
        found: ParameterSet = {}
        for attrs, body in self._array_pattern.findall(text):
            code = _raw_attribute(attrs, "name", "id")
            if code and code not in found:
                found[code] = ParameterSeries(code=code, values=_raw_values(body))
        return found

    def _scan_time_series(self, text: str) -> ParameterSet:
        found: ParameterSet = {}
        for block in self._series_pattern.findall(text):
            for attrs, body in self._parameter_pattern.findall(block):
                code = _raw_attribute(attrs, "id", "name")
                if not code or code in found:
                    continue
                packed = _raw_attribute(attrs, "values")
                values = parse_values(packed) if packed is not None else _raw_values(body)
                found[code] = ParameterSeries(code=code, values=values)
        return found

    def _scan_forecasts(self, text: str) -> ParameterSet:
        found: ParameterSet = {}
        for attrs, body in self._forecast_pattern.findall(text):
            code = _raw_attribute(attrs, "elementName")
            if not code:
                match = self._element_name_pattern.search(body)
                code = match.group(1).strip() if match else None
            if code and code not in found:
                values = _raw_values(body)
                if values.size:
                    found[code] = ParameterSeries(code=code, values=values)
        return found


class GenericWalkStrategy(ExtractionStrategy):
    """Any node with a name-like field and a numeric-sequence-like field.

    Repeated codes are concatenated in document order.
    """

    name = "generic-walk"

    def extract(self, tree, text):
        chunks: Dict[str, List[np.ndarray]] = {}
        for node in iter_nodes(tree):
            code = self._code_of(node)
            if not code:
                continue
            packed = attribute(node, "values")
            if packed is not None:
                values = parse_values(packed)
            else:
                value_nodes = child_nodes(node, "value") + child_nodes(node, "values")
                if not value_nodes:
                    continue
                values = _values_from_nodes(value_nodes)
            if not np.isfinite(values).any():
                continue
            chunks.setdefault(code, []).append(values)
        return {
            code: ParameterSeries(code=code, values=np.concatenate(parts))
            for code, parts in chunks.items()
        }

    @staticmethod
    def _code_of(node: ET.Element) -> str | None:
        code = attribute(node, "elementName", "name", "id", "code")
        if code:
            return code
        for name in ("elementName", "name"):
            name_nodes = child_nodes(node, name)
            if name_nodes and len(name_nodes[0]) == 0:
                text = node_text(name_nodes[0])
                if text:
                    return text
        return None


DEFAULT_STRATEGIES: Tuple[ExtractionStrategy, ...] = (
    TabularArrayStrategy(),
    TimeSeriesStrategy(),
    ForecastElementStrategy(),
    RawTextStrategy(),
    GenericWalkStrategy(),
)


def extract_parameters(
    tree: ET.Element | None,
    text: str | None,
    strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
    diagnostic: bool = False,
) -> ExtractionOutcome:
    """Run the strategies in priority order; the first non-empty result wins.

    With ``diagnostic`` every strategy runs so its code count can be reported,
    but the winner is still the first non-empty one.
    """
    counts: Dict[str, int] = {}
    winner: str | None = None
    chosen: ParameterSet = {}
    for strategy in strategies:
        if winner is not None and not diagnostic:
            break
        found = strategy.extract(tree, text)
        counts[strategy.name] = len(found)
        LOGGER.debug("Extraction strategy %s found %d parameters", strategy.name, len(found))
        if winner is None and found:
            winner = strategy.name
            chosen = found
    if winner is None:
        LOGGER.warning("No extraction strategy found any parameters")
    return ExtractionOutcome(parameters=chosen, strategy=winner, counts=counts)


# Alignment ------------------------------------------------------------------
def align_series(values: np.ndarray, length: int) -> np.ndarray:
    """Truncate from the end or right-pad with NaN to exactly ``length``."""
    values = np.asarray(values, dtype=np.float64)
    if values.size >= length:
        return values[:length].copy()
    return np.concatenate([values, np.full(length - values.size, np.nan)])


def align_parameters(parameters: ParameterSet, axis: TimeAxis) -> ParameterSet:
    positions = np.asarray(axis.positions, dtype=np.intp)
    aligned: ParameterSet = {}
    for code, series in parameters.items():
        reconciled = align_series(series.values, axis.step_count)
        aligned[code] = series.with_values(reconciled[positions])
    return aligned


# Station identity -----------------------------------------------------------
def _is_place_name(candidate: str | None) -> bool:
    if not candidate:
        return False
    return STATION_CODE_PATTERN.match(candidate.strip()) is None


def _name_from_description(raw: str) -> str | None:
    cleaned = re.sub(r"<br\s*/?>", "\n", raw or "", flags=re.IGNORECASE)
    cleaned = html.unescape(re.sub(r"<[^>]+>", "", cleaned))
    lines = [line.strip() for line in cleaned.splitlines() if line.strip()]
    if not lines:
        return None
    first = re.sub(r"^station\s*:\s*", "", lines[0], flags=re.IGNORECASE)
    match = re.match(r"^(.*?)\s*\(\s*[A-Za-z0-9]{4,5}\s*\)\s*$", first)
    candidate = (match.group(1) if match else first).strip()
    return candidate if _is_place_name(candidate) else None


def resolve_station_name(tree: ET.Element | None) -> str | None:
    placemark = next(iter_nodes(tree, "Placemark"), None)
    if placemark is None:
        return None
    for node in iter_nodes(placemark, "name"):
        candidate = node_text(node)
        if _is_place_name(candidate):
            return candidate
    for node in iter_nodes(placemark, "description"):
        candidate = _name_from_description(node_text(node))
        if candidate:
            return candidate
    return None


def parse_bulletin(
    text: str,
    tz: tzinfo = timezone.utc,
    diagnostic: bool = False,
    strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
) -> Bulletin:
    tree = parse_markup(text)
    raw_axis = resolve_time_axis(tree, text, tz=tz)
    outcome = extract_parameters(tree, text, strategies=strategies, diagnostic=diagnostic)
    return Bulletin(
        time_axis=raw_axis.aligned(),
        parameters=align_parameters(outcome.parameters, raw_axis),
        strategy=outcome.strategy,
        strategy_counts=outcome.counts,
        station_name=resolve_station_name(tree),
    )
