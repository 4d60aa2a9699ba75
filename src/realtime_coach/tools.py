"""Weekly exercise plan tools and the three-step choreography.

The remote model is offered three functions. Each completed call is
cached under its step key and answered with a fixed follow-up
instruction that moves the conversation to the next step.
"""

from dataclasses import dataclass

from realtime_coach.protocol import SessionTools, SessionUpdateMessage, ToolDefinition

REVIEW_PLAN = "review_current_weekly_plan"
ADJUST_PLAN = "adjust_exercise_plan"
CONFIRM_PLAN = "confirm_final_plan"

REVIEW_CACHE_KEY = "lastReviewPlan"
ADJUSTMENT_CACHE_KEY = "lastExerciseAdjustment"
CONFIRMATION_CACHE_KEY = "lastPlanConfirmation"

ADJUST_INSTRUCTIONS = (
    "Through discussion, work together with the user to adjust their weekly exercise plan."
)
CONFIRM_INSTRUCTIONS = "Confirm the final new weekly exercise plan with the user."
FAREWELL_INSTRUCTIONS = "Tell the user the call is ending and say goodbye."


REVIEW_PLAN_TOOL = ToolDefinition(
    name=REVIEW_PLAN,
    description="Call this function when the user has difficulty completing the current weekly plan.",
    parameters={
        "type": "object",
        "strict": True,
        "properties": {
            "user_feedback": {
                "type": "string",
                "description": "Feedback about the current weekly exercise plan",
            },
        },
        "required": ["user_feedback"],
    },
)

ADJUST_PLAN_TOOL = ToolDefinition(
    name=ADJUST_PLAN,
    description=(
        "Call this function when the user wants to adjust the current weekly exercise plan. "
        "Supports multiple exercises."
    ),
    parameters={
        "type": "object",
        "strict": True,
        "properties": {
            "exercises": {
                "type": "array",
                "description": "List of exercises in the weekly plan",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "description": "Name of the exercise"},
                        "frequency": {"type": "number", "description": "How many times per week"},
                        "duration": {"type": "number", "description": "Duration per session"},
                        "notes": {
                            "type": "string",
                            "description": "Additional notes or requirements",
                        },
                    },
                    "required": ["name", "frequency", "duration"],
                },
            },
            "total_weekly_minutes": {
                "type": "number",
                "description": "Total planned exercise minutes per week",
            },
        },
        "required": ["exercises", "total_weekly_minutes"],
    },
)

CONFIRM_PLAN_TOOL = ToolDefinition(
    name=CONFIRM_PLAN,
    description="Call this function when the user confirms the final weekly exercise plan.",
    parameters={
        "type": "object",
        "strict": True,
        "properties": {
            "confirmed_final_plan": {
                "type": "string",
                "description": "User confirms the final weekly exercise plan",
            },
            "summary": {
                "type": "string",
                "description": "Summary of the final weekly exercise plan",
            },
        },
        "required": ["confirmed_final_plan", "summary"],
    },
)

TOOL_DEFINITIONS: tuple[ToolDefinition, ...] = (REVIEW_PLAN_TOOL, ADJUST_PLAN_TOOL, CONFIRM_PLAN_TOOL)


def tool_registration() -> SessionUpdateMessage:
    """Build the one-time tool registration message."""
    return SessionUpdateMessage(
        session=SessionTools(tools=list(TOOL_DEFINITIONS), tool_choice="auto")
    )


@dataclass(frozen=True)
class ToolStep:
    """One step of the choreography.

    Attributes:
        function_name: Function call that completes the step
        cache_key: Cache key the call's result is stored under
        follow_up: Instruction sent after the step completes
        nest_under: If set, arguments are cached under this field
            instead of being spread into the cached record
    """

    function_name: str
    cache_key: str
    follow_up: str
    nest_under: str | None = None

    def cached_record(self, arguments: dict, timestamp: str) -> dict:
        """Build the cached record for this step's arguments."""
        if self.nest_under is not None:
            return {"timestamp": timestamp, self.nest_under: arguments}
        return {"timestamp": timestamp, **arguments}


CHOREOGRAPHY: tuple[ToolStep, ...] = (
    ToolStep(REVIEW_PLAN, REVIEW_CACHE_KEY, ADJUST_INSTRUCTIONS, nest_under="feedback"),
    ToolStep(ADJUST_PLAN, ADJUSTMENT_CACHE_KEY, CONFIRM_INSTRUCTIONS),
    ToolStep(CONFIRM_PLAN, CONFIRMATION_CACHE_KEY, FAREWELL_INSTRUCTIONS),
)

CACHE_KEYS: tuple[str, ...] = tuple(step.cache_key for step in CHOREOGRAPHY)
