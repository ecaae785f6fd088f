"""Monitored lab tests and their LOINC codes."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType


@dataclass(frozen=True)
class LabCode:
    """A standardized LOINC code and unit for a local test name."""

    code: str
    unit: str


class LabCodeMap(Mapping[str, LabCode]):
    """Immutable mapping from the lab's local test names to LOINC codes."""

    def __init__(self, entries: Mapping[str, LabCode]):
        self._entries = MappingProxyType(dict(entries))
        self._names_by_code: dict[str, str] = {}
        for name, lab_code in self._entries.items():
            # First name registered for a code wins on reverse lookup
            self._names_by_code.setdefault(lab_code.code, name)

    def __getitem__(self, name: str) -> LabCode:
        return self._entries[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def codes(self) -> frozenset[str]:
        """All monitored LOINC codes."""
        return frozenset(self._names_by_code)

    def is_monitored(self, code: str | None) -> bool:
        return bool(code) and code in self._names_by_code

    def name_for(self, code: str) -> str:
        """Reverse lookup of the local test name; falls back to the code itself."""
        return self._names_by_code.get(code, code)


DEFAULT_LAB_CODES = LabCodeMap(
    {
        "HDL": LabCode("2085-9", "mg/dL"),
        "LDL": LabCode("18262-6", "mg/dL"),
        "CPK": LabCode("2157-6", "U/L"),
        "ΚΡΕΑΤΙΝΙΝΗ": LabCode("2160-0", "mg/dL"),  # Creatinine
        "ΧΟΛΗΣΤΕΡΟΛΗ ΟΛΙΚΗ": LabCode("2093-3", "mg/dL"),  # Total cholesterol
        "ΛΙΠΟΠΡΩΤΕΙΝΗ-α Lp(a)": LabCode("10835-7", "mg/dL"),  # Lipoprotein(a)
        "CRP": LabCode("1988-5", "mg/L"),  # C-reactive protein
        "25-ΟΗ ΒΙΤΑΜΙΝΗ D ΟΛΙΚΗ": LabCode("35365-6", "ng/mL"),  # 25-OH vitamin D total
        "ΣΑΚΧΑΡΟ": LabCode("2339-0", "mg/dL"),  # Glucose
        "ΤΡΑΝΣΑΜΙΝΑΣΗ (SGPT/ALT)": LabCode("1742-6", "U/L"),  # ALT/SGPT
        "ΓΛΥΚΟΖΥΛΙΩΜΕΝΗ ΑΙΜΟΣΦΑΙΡΙΝΗ HbA1c": LabCode("4548-4", "%"),  # HbA1c
        "ΤΡΙΓΛΥΚΕΡΙΔΙΑ": LabCode("2571-8", "mg/dL"),  # Triglycerides
        "ΤΡΑΝΣΑΜΙΝΑΣΗ (SGOT/ AST)": LabCode("1920-8", "U/L"),  # AST/SGOT
        "TSH": LabCode("3016-3", "mIU/L"),  # Thyroid stimulating hormone
    }
)
