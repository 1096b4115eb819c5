"""
Number → timezone lookup for quiet-hours enforcement.

Maps NANP area codes to IANA timezones. Mobile number portability means an
area code is a best-effort signal, so callers can pass explicit per-number
overrides (e.g. a timezone captured at opt-in) that win over the area code.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional
from zoneinfo import ZoneInfo

from textgate.utils.phone import nanp_area_code

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"

_ZONE_AREA_CODES: dict[str, tuple[str, ...]] = {
    "America/New_York": (
        "201", "202", "203", "207", "212", "215", "216", "229", "231", "234",
        "239", "240", "248", "267", "269", "276", "301", "302", "304", "305",
        "313", "315", "321", "330", "332", "336", "339", "347", "351", "352",
        "386", "401", "404", "407", "410", "412", "413", "434", "440", "443",
        "470", "475", "478", "484", "508", "513", "516", "517", "518", "540",
        "551", "561", "567", "570", "571", "585", "586", "603", "607", "609",
        "610", "614", "616", "617", "631", "646", "678", "703", "704", "706",
        "716", "717", "718", "724", "727", "732", "734", "740", "754", "757",
        "770", "772", "774", "781", "786", "802", "803", "804", "810", "813",
        "828", "843", "845", "848", "856", "857", "860", "862", "863", "904",
        "908", "910", "912", "914", "917", "919", "929", "937", "941", "954",
        "973", "978", "980", "984",
    ),
    "America/Detroit": ("313", "517", "586", "734", "810", "947"),
    "America/Indiana/Indianapolis": ("260", "317", "463", "574", "765", "930"),
    "America/Chicago": (
        "205", "210", "214", "217", "218", "224", "225", "228", "251", "254",
        "256", "262", "270", "281", "309", "312", "314", "316", "318", "319",
        "320", "331", "334", "337", "346", "361", "402", "405", "409", "414",
        "417", "430", "432", "469", "479", "501", "502", "504", "507", "512",
        "515", "563", "573", "580", "601", "608", "612", "615", "618", "620",
        "630", "636", "641", "651", "662", "682", "701", "708", "713", "715",
        "731", "737", "773", "779", "785", "806", "815", "816", "817", "830",
        "832", "847", "850", "870", "901", "903", "913", "918", "920", "936",
        "940", "952", "956", "972", "979",
    ),
    "America/Denver": (
        "303", "307", "385", "406", "435", "505", "575", "719", "720", "801",
        "970",
    ),
    "America/Boise": ("208", "986"),
    "America/Phoenix": ("480", "520", "602", "623", "928"),
    "America/Los_Angeles": (
        "206", "209", "213", "253", "310", "323", "360", "408", "415", "424",
        "425", "442", "458", "503", "509", "510", "530", "541", "559", "562",
        "619", "626", "628", "650", "657", "661", "669", "702", "707", "714",
        "725", "747", "760", "775", "805", "818", "831", "858", "909", "916",
        "925", "949", "951", "971",
    ),
    "America/Anchorage": ("907",),
    "Pacific/Honolulu": ("808",),
    "America/Puerto_Rico": ("787", "939"),
    "Pacific/Guam": ("671",),
}

# Later zones win for codes listed twice (Michigan codes move to America/Detroit)
AREA_CODE_TIMEZONES: dict[str, str] = {
    code: zone for zone, codes in _ZONE_AREA_CODES.items() for code in codes
}


def is_valid_timezone(tz_name: Optional[str]) -> bool:
    """True if tz_name is a loadable IANA timezone id."""
    if not tz_name:
        return False
    try:
        ZoneInfo(tz_name)
        return True
    except (KeyError, ValueError):
        return False


class TimezoneResolver(ABC):
    """Resolves a phone number to an IANA timezone id."""

    @abstractmethod
    def resolve(self, phone: str) -> str: ...


class AreaCodeTimezoneResolver(TimezoneResolver):
    """
    Best-effort resolution by NANP area code.

    Resolution order: explicit override → area code table → default timezone.
    """

    def __init__(
        self,
        default_timezone: str = DEFAULT_TIMEZONE,
        overrides: Optional[dict[str, str]] = None,
        table: Optional[dict[str, str]] = None,
    ) -> None:
        if not is_valid_timezone(default_timezone):
            logger.warning(
                "Invalid default timezone '%s', using %s", default_timezone, DEFAULT_TIMEZONE,
            )
            default_timezone = DEFAULT_TIMEZONE
        self.default_timezone = default_timezone
        self._overrides = dict(overrides or {})
        self._table = table if table is not None else AREA_CODE_TIMEZONES

    def set_override(self, phone: str, tz_name: str) -> None:
        if not is_valid_timezone(tz_name):
            raise ValueError(f"Unknown timezone: {tz_name}")
        self._overrides[phone] = tz_name

    def resolve(self, phone: str) -> str:
        override = self._overrides.get(phone)
        if override:
            return override

        area_code = nanp_area_code(phone)
        if area_code and area_code in self._table:
            return self._table[area_code]
        return self.default_timezone
