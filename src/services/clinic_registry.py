"""
Clinic / company lookups built from settings.
Unknown keys return None; callers decide whether that is a configuration error.
"""
from functools import lru_cache
from typing import Optional

from src.config import get_settings
from src.schemas.clinic_config import ClinicConfig, CompanyConfig


class ClinicRegistry:
    def __init__(self, companies: dict[str, dict], clinics: dict[str, dict]):
        self._companies = {
            key: CompanyConfig(key=key, **value) for key, value in companies.items()
        }
        self._clinics = {
            key: ClinicConfig(key=key, **value) for key, value in clinics.items()
        }
        self._by_location = {c.location_id: c for c in self._clinics.values()}

    def get_clinic(self, key: str) -> Optional[ClinicConfig]:
        return self._clinics.get(key)

    def get_company(self, key: str) -> Optional[CompanyConfig]:
        return self._companies.get(key)

    def get_clinic_for_location(self, location_id: str) -> Optional[ClinicConfig]:
        return self._by_location.get(location_id)

    def get_company_for_location(self, location_id: str) -> Optional[CompanyConfig]:
        clinic = self._by_location.get(location_id)
        if clinic is None:
            return None
        return self._companies.get(clinic.company_key)

    def get_company_by_id(self, company_id: str) -> Optional[CompanyConfig]:
        for company in self._companies.values():
            if company.company_id == company_id:
                return company
        return None

    def list_clinics(self) -> list[ClinicConfig]:
        return list(self._clinics.values())

    def list_companies(self) -> list[CompanyConfig]:
        return list(self._companies.values())


@lru_cache()
def get_clinic_registry() -> ClinicRegistry:
    settings = get_settings()
    return ClinicRegistry(settings.ghl_companies, settings.ghl_clinics)
