from outreach_agents.domain.models import WorkflowStep, WorkflowTemplate

# ==============================================================================
# LAPSED MEMBER WIN-BACK
# ==============================================================================

win_back_steps = [
    # --- STEP 1: PERSONAL CHECK-IN ---
    WorkflowStep(
        id="check_in",
        label="Personal check-in",
        action="send_message",
        expected_signal="reply",
        subject_line="We miss you, {subject_name}",
        prompt=(
            "Check in personally. Mention it has been a while since their last visit, "
            "ask how they are doing, and offer to help them get back into a routine. "
            "No discounts, no pressure."
        ),
    ),
    # --- STEP 2: OFFER A COMEBACK SESSION ---
    WorkflowStep(
        id="comeback_offer",
        label="Offer a comeback session",
        action="send_message",
        expected_signal="reply",
        prompt=(
            "Follow up on the check-in. Offer a free comeback session with a coach "
            "this week and ask which day works best."
        ),
    ),
    # --- STEP 3: HAND OVER TO THE OWNER ---
    WorkflowStep(
        id="owner_call",
        label="Call the member",
        action="create_task",
        expected_signal="manual",
    ),
]

WIN_BACK = WorkflowTemplate(
    id="lapsed_member_win_back",
    name="Lapsed member win-back",
    goal="The member books a class or confirms they are coming back.",
    steps=win_back_steps,
    timeout_days=14,
    trigger_config={"event": "member_inactive", "inactive_days": 14},
)

# ==============================================================================
# TRIAL CONVERSION
# ==============================================================================

trial_steps = [
    WorkflowStep(
        id="welcome",
        label="Welcome the trial member",
        action="send_message",
        expected_signal="reply",
        subject_line="Welcome to the gym, {subject_name}!",
        message=(
            "Hi {subject_name}, great to have you on your trial! "
            "How did your first session feel? Reply here with anything you need."
        ),
    ),
    WorkflowStep(
        id="alert_owner",
        label="Trial ending soon",
        action="notify_owner",
        expected_signal="none",
        message="{subject_name}'s trial ends soon. Goal: {goal}",
    ),
    WorkflowStep(
        id="membership_offer",
        label="Membership offer",
        action="send_message",
        expected_signal="reply",
        prompt=(
            "Their trial is ending. Ask what they enjoyed most and invite them to "
            "continue with a membership. Keep it personal, never salesy."
        ),
    ),
]

TRIAL_CONVERSION = WorkflowTemplate(
    id="trial_conversion",
    name="Trial conversion",
    goal="The trial member signs up for a paid membership.",
    steps=trial_steps,
    timeout_days=10,
    trigger_config={"event": "trial_started"},
)

# ==============================================================================
# REGISTRY
# ==============================================================================

BUILTIN_TEMPLATES = {
    WIN_BACK.id: WIN_BACK,
    TRIAL_CONVERSION.id: TRIAL_CONVERSION,
}
