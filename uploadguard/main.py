from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
import uvicorn

from uploadguard.config.policy_loader import load_effective_policy
from uploadguard.config.settings import settings
from uploadguard.errors import OperationalError
from uploadguard.models.policy import FailOn
from uploadguard.models.schemas import HealthResponse, InspectionResponse, PolicyResponse
from uploadguard.utils.logger import configure_logging, get_logger
from uploadguard.workflows.inspection import InspectionWorkflow

logger = get_logger(__name__)


def create_app(workflow: Optional[InspectionWorkflow] = None) -> FastAPI:
    """
    Build the HTTP surface. The effective policy is loaded once; a
    PolicyConfigError here refuses startup.
    """
    if workflow is None:
        policy = load_effective_policy(settings.POLICY_PATH, settings.OVERRIDE_POLICY_PATH)
        fail_on = FailOn.parse(settings.FAIL_ON) if settings.FAIL_ON else None
        workflow = InspectionWorkflow(policy, workers=settings.WORKERS, fail_on=fail_on)

    app = FastAPI(title="Upload Guard", version="1.0.0")
    app.state.workflow = workflow

    @app.post("/inspect", response_model=InspectionResponse)
    async def inspect_upload(
        request: Request,
        name_query: Optional[str] = Query(default=None, alias="name"),
    ):
        """
        Inspect the raw request body and return its per-file report
        """
        try:
            name = request.headers.get("x-file-name") or name_query or "upload"
            body = await request.body()
            inspected = await workflow.inspect(name, body)
            report = workflow.report_generator_service.build(inspected)
            return InspectionResponse(status=report.decision.outcome.value, report=report)

        except OperationalError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except HTTPException:
            raise
        except Exception as e:
            logger.error("Inspection request failed: %s", e, exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/policy", response_model=PolicyResponse)
    async def get_policy():
        """
        Return the effective policy the service decides with
        """
        dumped = workflow.policy.model_dump(mode="json", by_alias=True, exclude_none=True)
        return PolicyResponse(rules=dumped["rules"], defaults=dumped["defaults"], limits=dumped["limits"])

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """
        Health check endpoint
        """
        return HealthResponse(status="healthy", service="uploadguard", rules=len(workflow.policy_engine.rules))

    return app


app = create_app()


def serve(host: Optional[str] = None, port: Optional[int] = None) -> None:
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    uvicorn.run(app, host=host or settings.HOST, port=port or settings.PORT)


if __name__ == "__main__":
    serve()
