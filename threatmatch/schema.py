import json
from typing import Any, Dict, List

from .errors import ParseError
from .models import ThreatType
from .normalize import normalize_domain_name, normalize_registrar_id

REGISTRAR_ID_FIELD = "registrarId"
THREAT_MATCHES_FIELD = "threatMatches"
DOMAIN_NAME_FIELD = "domainName"
THREAT_TYPE_FIELD = "threatType"


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def validate_report_line(data: Any) -> List[str]:
    """
    Returns a list of validation error messages for one decoded report line.
    Empty list means valid.
    """
    if not isinstance(data, dict):
        return ["Report line must be a JSON object"]

    errors: List[str] = []

    if REGISTRAR_ID_FIELD not in data:
        errors.append(f"Missing required field: {REGISTRAR_ID_FIELD}")
    elif not _is_non_empty_str(data[REGISTRAR_ID_FIELD]):
        errors.append(f"Field '{REGISTRAR_ID_FIELD}' must be a non-empty string")

    matches = data.get(THREAT_MATCHES_FIELD)
    if THREAT_MATCHES_FIELD not in data:
        errors.append(f"Missing required field: {THREAT_MATCHES_FIELD}")
    elif not isinstance(matches, list):
        errors.append(f"Field '{THREAT_MATCHES_FIELD}' must be an array")
    else:
        for i, match in enumerate(matches):
            prefix = f"{THREAT_MATCHES_FIELD}[{i}]"
            if not isinstance(match, dict):
                errors.append(f"{prefix} must be an object")
                continue
            if not _is_non_empty_str(match.get(DOMAIN_NAME_FIELD)):
                errors.append(f"{prefix}.{DOMAIN_NAME_FIELD} must be a non-empty string")
            threat_type = match.get(THREAT_TYPE_FIELD)
            if not _is_non_empty_str(threat_type):
                errors.append(f"{prefix}.{THREAT_TYPE_FIELD} must be a non-empty string")
            else:
                try:
                    ThreatType.parse(threat_type)
                except ValueError as e:
                    errors.append(f"{prefix}.{THREAT_TYPE_FIELD}: {e}")

    return errors


def parse_report_line(line: str, line_number: int) -> Dict[str, Any]:
    """
    Decode and validate one report line.

    Returns:
        {"registrar_id": str, "threat_matches": [(domain_name, ThreatType), ...]}
        with names normalized

    Raises:
        ParseError: On malformed JSON or failed validation
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ParseError(f"Line {line_number}: invalid JSON: {e}") from e

    errors = validate_report_line(data)
    if errors:
        raise ParseError(f"Line {line_number}: " + "; ".join(errors))

    return {
        "registrar_id": normalize_registrar_id(data[REGISTRAR_ID_FIELD]),
        "threat_matches": [
            (
                normalize_domain_name(match[DOMAIN_NAME_FIELD]),
                ThreatType.parse(match[THREAT_TYPE_FIELD]),
            )
            for match in data[THREAT_MATCHES_FIELD]
        ],
    }
