"""
Database models - import all models here so Alembic can discover them.
"""
from src.models.pipeline_move import PipelineMove, StageMove, FieldUpdate
from src.models.stage_override import StageOverride
from src.models.ghl_token import GHLToken
from src.models.opportunity import Opportunity

__all__ = [
    "PipelineMove",
    "StageMove",
    "FieldUpdate",
    "StageOverride",
    "GHLToken",
    "Opportunity",
]
