"""Command-line entry point: log in, inspect and take quizzes."""

import argparse
import asyncio
import getpass
import json
import logging
import sys
from pathlib import Path
from typing import Any

from quiz_client import VERSION
from quiz_client.config import settings
from quiz_client.core.context import SessionContext, build_session_context
from quiz_client.core.errors import AuthExpired, QuizClientError, Unauthorized
from quiz_client.services.api_client import ResourceClient
from quiz_client.services.auth import AuthService
from quiz_client.services.deadline import format_remaining
from quiz_client.services.quiz_session import QuizSessionController, SessionState

logger = logging.getLogger(__name__)

EXIT_API_ERROR = 2
EXIT_AUTH_REQUIRED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quiz-client",
        description="Take timed quizzes against the course platform API.",
    )
    parser.add_argument("--base-url", help=f"API base URL (default: {settings.API_BASE_URL}).")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    login_cmd = subparsers.add_parser("login", help="Log in and store credentials.")
    login_cmd.add_argument("--username", required=True)
    login_cmd.add_argument("--password", help="Password (prompted when omitted).")

    subparsers.add_parser("logout", help="Forget stored credentials.")
    subparsers.add_parser("whoami", help="Show the logged-in user.")

    take_cmd = subparsers.add_parser("take", help="Start or resume a quiz attempt.")
    take_cmd.add_argument("quiz_id", type=int)
    take_cmd.add_argument(
        "--answers",
        help="JSON file mapping question id to a choice id (int) or a text answer (str).",
    )
    take_cmd.add_argument("--no-submit", action="store_true", help="Save answers but leave the attempt open.")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if (args.verbose or settings.DEBUG) else logging.INFO,
        format="%(asctime)s  %(name)-25s  %(levelname)-8s  %(message)s",
    )

    run_settings = settings.model_copy(update={"API_BASE_URL": args.base_url}) if args.base_url else settings
    context = build_session_context(run_settings)

    handler = {
        "login": _cmd_login,
        "logout": _cmd_logout,
        "whoami": _cmd_whoami,
        "take": _cmd_take,
    }[args.command]

    if args.command == "login" and not args.password:
        args.password = getpass.getpass("Password: ")

    try:
        return asyncio.run(handler(args, context))
    except (AuthExpired, Unauthorized) as exc:
        logger.error("%s", exc)
        return EXIT_AUTH_REQUIRED
    except QuizClientError as exc:
        logger.error("%s", exc)
        return EXIT_API_ERROR


async def _cmd_login(args: argparse.Namespace, context: SessionContext) -> int:
    async with ResourceClient(context) as client:
        user = await AuthService(client).login(args.username, args.password)
    print(f"Logged in as {user.username}")
    return 0


async def _cmd_logout(args: argparse.Namespace, context: SessionContext) -> int:
    async with ResourceClient(context) as client:
        AuthService(client).logout()
    print("Logged out")
    return 0


async def _cmd_whoami(args: argparse.Namespace, context: SessionContext) -> int:
    async with ResourceClient(context) as client:
        user = await AuthService(client).check_auth()
    if user is None:
        print("Not logged in")
        return EXIT_AUTH_REQUIRED
    role = user.profile.role if user.profile else "unknown"
    print(f"{user.username} ({role})")
    return 0


async def _cmd_take(args: argparse.Namespace, context: SessionContext) -> int:
    answers = _load_answers(Path(args.answers)) if args.answers else {}
    async with ResourceClient(context) as client:
        session = QuizSessionController(client, args.quiz_id)
        try:
            await session.load()
            if session.state is SessionState.ERROR:
                print(session.error.message if session.error else "Failed to load quiz")
                return _session_exit_code(session)
            _print_header(session)
            if session.read_only:
                print("You have already completed this quiz.")
                _print_score(session)
                return 0

            problem = _check_answers(session, answers)
            if problem:
                print(problem)
                return EXIT_API_ERROR
            for question_id, value in answers.items():
                if isinstance(value, int):
                    session.edit(question_id, selected_choice_id=value)
                else:
                    session.edit(question_id, text_answer=str(value))
            if answers:
                await asyncio.sleep(session.settings.AUTOSAVE_DEBOUNCE_SECONDS)
                await session.settle()
                _print_save_states(session)

            if args.no_submit:
                return 0 if session.state is SessionState.IN_PROGRESS else _session_exit_code(session)

            attempt = await session.submit()
            if attempt is None:
                print(session.error.message if session.error else "Quiz was not submitted")
                return _session_exit_code(session)
            print("Quiz submitted.")
            _print_score(session)
            return 0
        finally:
            session.dispose()


def _load_answers(path: Path) -> dict[int, Any]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise QuizClientError(f"Answers file {path} must contain a JSON object")
    return {int(k): v for k, v in raw.items()}


def _check_answers(session: QuizSessionController, answers: dict[int, Any]) -> str | None:
    """Describe the first answer that does not fit the quiz, or None."""
    questions = {q.id: q for q in session.questions}
    for question_id, value in answers.items():
        question = questions.get(question_id)
        if question is None:
            return f"Question {question_id} is not part of this quiz"
        # bool is an int subclass; JSON true/false is never a choice id
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            return f"Answer for question {question_id} must be a choice id or a text"
        if isinstance(value, int) and not question.has_choice(value):
            return f"Choice {value} does not belong to question {question_id}"
        if isinstance(value, str) and not question.accepts_text:
            return f"Question {question_id} takes a choice id, not a text answer"
    return None


def _session_exit_code(session: QuizSessionController) -> int:
    if session.error is not None and isinstance(session.error.cause, AuthExpired):
        return EXIT_AUTH_REQUIRED
    return EXIT_API_ERROR


def _print_header(session: QuizSessionController) -> None:
    quiz = session.quiz
    if quiz is None:
        return
    print(quiz.title)
    if quiz.description:
        print(quiz.description)
    if session.remaining_seconds is not None:
        print(f"Time remaining: {format_remaining(session.remaining_seconds)}")
    for index, question in enumerate(session.questions, start=1):
        print(f"  {index}. [{question.id}] {question.text}")


def _print_save_states(session: QuizSessionController) -> None:
    if session.answers is None:
        return
    for question_id, answer in session.answers.answers.items():
        if answer.revision:
            print(f"  question {question_id}: {answer.save_state.value}")


def _print_score(session: QuizSessionController) -> None:
    attempt = session.attempt
    if attempt is None:
        return
    score = f"{attempt.score:.1f}%" if attempt.score is not None else "Not graded yet"
    print(f"Status: {attempt.status.value}  Score: {score}")
    if attempt.feedback:
        print(attempt.feedback)


if __name__ == "__main__":
    sys.exit(main())
