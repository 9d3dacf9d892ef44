from fastapi import Request

from socflow.services.pipeline import IncidentPipeline


def get_pipeline(request: Request) -> IncidentPipeline:
    return request.app.state.pipeline
