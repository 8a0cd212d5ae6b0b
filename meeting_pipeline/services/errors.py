class PipelineError(Exception):
    status_code = 500


class IntegrationAuthError(PipelineError):
    status_code = 401


class PayloadValidationError(PipelineError):
    status_code = 400


class SyncInProgressError(PipelineError):
    status_code = 409


class UpstreamError(PipelineError):
    status_code = 502

    def __init__(self, message: str, *, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class UpstreamAuthError(UpstreamError):
    pass


class UpstreamTransientError(UpstreamError):
    pass


class WebhookSignatureError(PipelineError):
    status_code = 401
