from manual_service.models.base import Base
from manual_service.models.export_job import ExportJob
from manual_service.models.form_template import FormTemplate
from manual_service.models.manual_service import ManualService
from manual_service.models.mds_step import MdsStep
from manual_service.models.step_description import StepDescription
from manual_service.models.subprocess import Subprocess

__all__ = [
    "Base",
    "ManualService",
    "Subprocess",
    "MdsStep",
    "StepDescription",
    "ExportJob",
    "FormTemplate",
]
