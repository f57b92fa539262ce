"""Plain-text progress report comparing recorded and repaired statistics."""

from quiz_progress.maintenance.repair import TrackerTrust, repair
from quiz_progress.models.catalog import CategoryCatalog
from quiz_progress.models.progress import OvercomePolicy, UserProgress, display_correct_count
from quiz_progress.progress.tracker import TrackerData


def generate_report(
    progress: UserProgress,
    catalog: CategoryCatalog | None = None,
    tracker: TrackerData | None = None,
    trust: TrackerTrust = TrackerTrust.USE_HIGHER,
    overcome_policy: OvercomePolicy = OvercomePolicy.REMOVE,
    identity: str | None = None,
) -> str:
    """Render the recorded statistics next to what repair would make of them."""
    report = repair(
        progress,
        catalog=catalog,
        tracker=tracker,
        trust=trust,
        overcome_policy=overcome_policy,
    )
    fixed = report.progress

    title = f"Progress report: {identity}" if identity else "Progress report"
    lines = [f"=== {title} ===", ""]
    lines.append("Recorded vs repaired:")
    lines.append(
        f"  Total answered: {progress.total_questions_answered} (recorded) "
        f"vs {fixed.total_questions_answered} (repaired)"
    )
    lines.append(
        f"  Total correct: {progress.correct_answers} (recorded) "
        f"vs {fixed.correct_answers} (repaired)"
    )
    lines.append(f"  Correct incl. overcome: {display_correct_count(fixed)}")
    lines.append(f"  Accuracy: {fixed.accuracy}%")
    lines.append(f"  Incorrect questions: {len(fixed.incorrect_questions)}")
    lines.append(f"  Overcome questions: {len(fixed.overcome_questions)}")
    lines.append(f"  Study sessions: {len(fixed.study_sessions)}")
    lines.append(f"  Streak: {fixed.current_streak} (best {fixed.best_streak})")
    lines.append("")

    lines.append("Categories:")
    for category, entry in fixed.category_progress.items():
        recorded = progress.category_progress.get(category)
        if recorded is None:
            lines.append(f"  {category}: missing (seeded with {entry.total_questions} questions)")
            continue
        lines.append(f"  {category}:")
        lines.append(
            f"    Answered: {recorded.answered_questions} (recorded) "
            f"vs {entry.answered_questions} (repaired) of {entry.total_questions}"
        )
        lines.append(
            f"    Correct: {recorded.correct_answers} (recorded) "
            f"vs {entry.correct_answers} (repaired)"
        )

    if fixed.mock_category_progress:
        lines.append("")
        lines.append("Timed exams:")
        for category, rollup in fixed.mock_category_progress.items():
            if rollup.attempts_count == 0:
                continue
            lines.append(
                f"  {category}: {rollup.attempts_count} attempt(s), best {rollup.best_score}, "
                f"latest {rollup.latest_score}, average {rollup.average_score}, "
                f"passed {rollup.passed_count}"
            )

    lines.append("")
    if report.violations:
        lines.append("Issues found:")
        lines.extend(f"  - {message}" for message in report.messages())
    else:
        lines.append("No issues found")
    return "\n".join(lines) + "\n"
