"""Phase prompts for the Lisa workflow.

``build_phase_prompt`` is the only place phase prompts are rendered,
including the very first planner prompt.
"""
from __future__ import annotations

from tabloop.shared.models.session import LisaPhase

LISA_PHASE_COMPLETE_SIGNAL = "<lisa-phase>COMPLETE</lisa-phase>"
LISA_REVIEW_APPROVE_SIGNAL = "<lisa-review>APPROVE</lisa-review>"
LISA_REVIEW_REJECT_PREFIX = "<lisa-review>REJECT:"
LISA_REVIEW_REJECT_SUFFIX = "</lisa-review>"

DEFAULT_CONTEXT_CHARS = 2000

PHASE_TITLES: dict[LisaPhase, str] = {
    LisaPhase.PLAN: "PLANNER",
    LisaPhase.PLAN_REVIEW: "PLAN REVIEW",
    LisaPhase.EXECUTE: "CODE",
    LisaPhase.CODE_REVIEW: "CODE REVIEW",
    LisaPhase.VALIDATE: "TEST",
    LisaPhase.FINAL_REVIEW: "FINAL REVIEW",
}

_NO_COMMIT = (
    "**Do not commit or push during this loop.** Do not run `git add`, "
    "`git commit` or `git push`; leave changes in the working tree for the "
    "user to commit once the loop finishes."
)


def reject_signal(phase: LisaPhase) -> str:
    return f"{LISA_REVIEW_REJECT_PREFIX}{phase.value}{LISA_REVIEW_REJECT_SUFFIX}"


def _reject_options(*phases: LisaPhase) -> str:
    return "\nOR\n".join(reject_signal(p) for p in phases)


_PLAN = (
    "You are the **Planner**. Turn the original task into a plan before any "
    "code is written.\n\n"
    "1. Enumerate EVERY requirement in the original request; skip nothing.\n"
    "2. Create or update `plan.md` with the problem statement, the approach, "
    "a checklist of atomic tasks mapped to requirements, acceptance criteria "
    "and a testing strategy.\n"
    "3. Call out edge cases, error handling and any assumptions you made.\n\n"
    "When the plan is ready for review, output exactly:\n"
    f"{LISA_PHASE_COMPLETE_SIGNAL}"
)


_PLAN_REVIEW = (
    "You are the **Reviewer**. Review `plan.md` before any code is written.\n\n"
    "Check completeness against the ORIGINAL request, clarity of each task, "
    "soundness of the approach, verifiable acceptance criteria and risks. "
    "Default to rejecting: a flawed plan wastes the coding phase.\n\n"
    "If the plan is ready for implementation, output:\n"
    f"{LISA_REVIEW_APPROVE_SIGNAL}\n\n"
    "If it needs work, output:\n"
    f"{reject_signal(LisaPhase.PLAN)}\n\n"
    "Always include specific feedback on what is missing or unclear."
)


_EXECUTE = (
    "You are the **Coder**. The plan was approved; implement it.\n\n"
    "1. Read `plan.md` and work through every task.\n"
    "2. Tick off completed items in `plan.md` as you go.\n"
    "3. Note any deviation from the plan and why.\n"
    "4. Make sure the project builds and basic checks pass.\n\n"
    "When every planned item is implemented and the build passes, output exactly:\n"
    f"{LISA_PHASE_COMPLETE_SIGNAL}"
)


_CODE_REVIEW = (
    "You are the **Reviewer**. Review the implementation before testing. "
    "Run `git diff` to see every change.\n\n"
    "Check that each item in `plan.md` is actually implemented, the code is "
    "clean and fits the codebase, errors and edge cases are handled, and no "
    "security or performance problems were introduced. Default to rejecting "
    "incomplete or hacky work.\n\n"
    "If the code is ready for testing, output:\n"
    f"{LISA_REVIEW_APPROVE_SIGNAL}\n\n"
    "If not, name the phase to return to:\n"
    f"{_reject_options(LisaPhase.EXECUTE, LisaPhase.PLAN)}\n\n"
    "Always include specific feedback: files, lines and what must change."
)


def _validate(evidence: str) -> str:
    return (
        "You are the **Tester**. The code was reviewed; prove that it works.\n\n"
        f"1. Write a test plan to `{evidence}/test-plan.md`.\n"
        "2. Run the existing test suite and add tests for the new behaviour.\n"
        "3. Exercise the actual feature the way a user would. For UI work, "
        f"capture screenshots of the running application into `{evidence}/screenshots/` "
        "covering each step of the workflow, including error and empty states.\n"
        f"4. Record results in `{evidence}/test-results.md`, UX observations in "
        f"`{evidence}/ux-notes.md` and an acceptance checklist in `{evidence}/checklist.md`.\n"
        f"5. Summarise all evidence in `{evidence}/summary.html`.\n\n"
        "Test the specific scenario from the original task, not whatever is "
        "easiest to reach. Mock or inject data where a condition is hard to "
        "reproduce.\n\n"
        "When validation is complete and the evidence is gathered, output exactly:\n"
        f"{LISA_PHASE_COMPLETE_SIGNAL}"
    )


def _final_review(evidence: str) -> str:
    return (
        "You are the **Reviewer** doing the FINAL review. This is the last line "
        "of defence; approve only if everything is genuinely complete.\n\n"
        "1. `plan.md`: every task checked off and every original requirement met?\n"
        "2. `git diff`: production-ready, no shortcuts?\n"
        f"3. `{evidence}/`: is `summary.html` present and complete, do the tests "
        "pass, and do the screenshots show the real feature rather than code or "
        "terminal output? Open and look at each screenshot.\n\n"
        "If everything holds up, output:\n"
        f"{LISA_REVIEW_APPROVE_SIGNAL}\n\n"
        "Otherwise name the phase to return to:\n"
        f"{_reject_options(LisaPhase.VALIDATE, LisaPhase.EXECUTE, LisaPhase.PLAN)}\n\n"
        "Include detailed feedback on what you reviewed and why you decided."
    )


_PHASE_INSTRUCTIONS: dict[LisaPhase, str] = {
    LisaPhase.PLAN: _PLAN,
    LisaPhase.PLAN_REVIEW: _PLAN_REVIEW,
    LisaPhase.EXECUTE: _EXECUTE,
    LisaPhase.CODE_REVIEW: _CODE_REVIEW,
}

# Phases whose instructions point at the evidence folder.
_EVIDENCE_INSTRUCTIONS = {
    LisaPhase.VALIDATE: _validate,
    LisaPhase.FINAL_REVIEW: _final_review,
}


def phase_instructions(phase: LisaPhase, evidence_folder: str = "evidence") -> str:
    if phase in _EVIDENCE_INSTRUCTIONS:
        return _EVIDENCE_INSTRUCTIONS[phase](evidence_folder)
    return _PHASE_INSTRUCTIONS[phase]


def truncate_response(text: str, limit: int = DEFAULT_CONTEXT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n\n... (truncated)"


def build_phase_prompt(
    phase: LisaPhase,
    visit_count: int,
    original_prompt: str,
    last_response: str,
    reviewer_feedback: str | None = None,
    evidence_folder: str = "evidence",
    context_chars: int = DEFAULT_CONTEXT_CHARS,
) -> str:
    """Render the prompt for *phase*.

    The visit number is only shown on revisits, and reviewer feedback is
    placed first so the agent addresses it before anything else.
    """
    title = PHASE_TITLES[phase]
    visit_label = f" (Visit #{visit_count})" if visit_count > 1 else ""
    feedback = (
        f"\n## Reviewer Feedback (ADDRESS THIS):\n\n{reviewer_feedback}\n"
        if reviewer_feedback
        else ""
    )
    return (
        f"**Lisa Loop - {title}**\n"
        f"{feedback}\n"
        "---\n\n"
        "## Original Task:\n\n"
        f"{original_prompt}\n\n"
        "---\n\n"
        "## Previous Response (context):\n\n"
        f"{truncate_response(last_response or '', context_chars)}\n\n"
        "---\n\n"
        f"## {title} PHASE{visit_label}\n\n"
        f"{_NO_COMMIT}\n\n"
        f"{phase_instructions(phase, evidence_folder)}"
    )
