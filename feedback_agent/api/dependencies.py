from fastapi import Request

from feedback_agent.pipelines.feedback_pipeline import FeedbackPipeline


def get_pipeline(request: Request) -> FeedbackPipeline:
    """The pipeline owned by the running app."""
    return request.app.state.pipeline
