"""Competitor registry — the fixed set of tracked companies.

Provides the static catalog of device / drug competitors, the
reimbursement entities (CPT codes, drug brand names) each one maps to, and
optional company-specific growth assumptions used when projecting.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from src.models.reimbursement import DatasetType


class CompetitorType(StrEnum):
    """Kind of competitor; determines which dataset carries its data."""

    DEVICE = "device"
    DRUG = "drug"
    EARLY_STAGE = "early-stage"


@dataclass(frozen=True)
class Competitor:
    """A tracked company and its reimbursement entities."""

    name: str
    type: CompetitorType
    treatment: str
    short_name: str | None = None
    company: str | None = None
    cpt_codes: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    cik: str | None = None
    industry_growth: float | None = None

    @property
    def dataset_type(self) -> DatasetType | None:
        """Dataset carrying this competitor's data; None for early-stage companies."""
        if self.type == CompetitorType.DEVICE and self.cpt_codes:
            return DatasetType.VOLUME_BY_CODE
        if self.type == CompetitorType.DRUG:
            return DatasetType.COST_BY_NAME
        return None

    @property
    def entity_ids(self) -> tuple[str, ...]:
        """CPT codes for devices, the brand name for drugs, nothing otherwise."""
        if self.dataset_type == DatasetType.VOLUME_BY_CODE:
            return self.cpt_codes
        if self.dataset_type == DatasetType.COST_BY_NAME:
            return (self.name,)
        return ()


DEFAULT_COMPETITORS: tuple[Competitor, ...] = (
    Competitor(
        name="LivaNova",
        type=CompetitorType.DEVICE,
        treatment="Vagus Nerve Stimulation",
        short_name="VNS",
        cpt_codes=("64568", "61885"),
        keywords=("Vagus Nerve Stimulation", "VNS"),
        cik="0001639691",
    ),
    Competitor(
        name="Medtronic",
        type=CompetitorType.DEVICE,
        treatment="Deep Brain Stimulation",
        short_name="DBS",
        cpt_codes=("61863", "61864", "61885", "61886"),
        keywords=("Deep Brain Stimulation", "DBS"),
        cik="0001613103",
    ),
    Competitor(
        name="NeuroPace",
        type=CompetitorType.DEVICE,
        treatment="Responsive Neurostimulation",
        short_name="RNS",
        cpt_codes=("61850", "61860", "61863", "61885", "61889"),
        keywords=("Responsive Neurostimulation", "RNS"),
        cik="0001750346",
    ),
    Competitor(
        name="XCOPRI",
        type=CompetitorType.DRUG,
        treatment="Cenobamate",
        company="SK Biopharmaceuticals",
        keywords=("Cenobamate", "XCOPRI"),
        cik="0001815957",
    ),
    Competitor(
        name="Precisis AG",
        type=CompetitorType.EARLY_STAGE,
        treatment="EASEE",
        keywords=("EASEE epilepsy",),
    ),
    Competitor(
        name="Epi-Minder",
        type=CompetitorType.EARLY_STAGE,
        treatment="Seizure Monitoring",
        keywords=("Epi-Minder epilepsy",),
    ),
    Competitor(
        name="Flow Medical",
        type=CompetitorType.EARLY_STAGE,
        treatment="Depression Device",
        keywords=("Flow Medical epilepsy",),
    ),
)


@dataclass
class CompetitorRegistry:
    """Lookup over the tracked competitors."""

    competitors: tuple[Competitor, ...] = field(default=DEFAULT_COMPETITORS)

    def names(self) -> list[str]:
        return [c.name for c in self.competitors]

    def find(self, name: str) -> Competitor | None:
        """Case-insensitive match on the competitor or parent company name."""
        wanted = name.strip().lower()
        for competitor in self.competitors:
            if competitor.name.lower() == wanted:
                return competitor
        for competitor in self.competitors:
            if competitor.company and competitor.company.lower() == wanted:
                return competitor
        return None

    def get(self, name: str) -> Competitor:
        """Like ``find`` but raises.

        Raises:
            KeyError: If no competitor matches.
        """
        competitor = self.find(name)
        if competitor is None:
            msg = f"Company not found: {name}. Available: {', '.join(self.names())}"
            raise KeyError(msg)
        return competitor

    def peer_entities(self, dataset_type: DatasetType) -> list[str]:
        """All distinct entity ids of the given dataset type, in catalog order."""
        seen: dict[str, None] = {}
        for competitor in self.competitors:
            if competitor.dataset_type == dataset_type:
                for entity_id in competitor.entity_ids:
                    seen.setdefault(entity_id, None)
        return list(seen)

    def growth_rate_for(self, dataset_type: DatasetType, entity_id: str) -> float | None:
        """Company-specific growth (%) for an entity, if any owner defines one."""
        for competitor in self.competitors:
            if (
                competitor.dataset_type == dataset_type
                and entity_id in competitor.entity_ids
                and competitor.industry_growth is not None
            ):
                return competitor.industry_growth
        return None
