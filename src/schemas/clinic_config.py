"""
Tenancy configuration schema - GoHighLevel companies and the clinics
(locations) under them. Loaded from Settings.ghl_companies / ghl_clinics.
"""
from typing import Optional
from pydantic import BaseModel


class CompanyConfig(BaseModel):
    key: str
    company_id: str
    name: Optional[str] = None


class ClinicConfig(BaseModel):
    key: str
    location_id: str
    name: str
    company_key: str
    sales_pipeline_id: str  # the one tracked pipeline; a location may own several
    service_field_id: Optional[str] = None  # contact custom field holding the deal type
