"""Entry point for `python -m bundlegate` and the `bundlegate` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from bundlegate.collaborator import build_collaborator
from bundlegate.errors import BundlegateError
from bundlegate.models import InterviewRound
from bundlegate.pipeline import BundlePipeline, PipelineResult, SourceDocument
from bundlegate.settings import RuntimeSettings


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Turn goals and requirements into validated, review-sized task bundles")
    parser.add_argument("--input", type=Path, required=True, help="Primary markdown document (goals, constraints, requirements)")
    parser.add_argument(
        "--context",
        type=Path,
        action="append",
        default=[],
        help="Auxiliary context document; may be repeated",
    )
    parser.add_argument("--output-root", type=Path, default=None, help="Directory to publish into (default: BUNDLEGATE_OUTPUT_ROOT)")
    parser.add_argument("--title", default=None, help="Series title (default: first goal)")
    parser.add_argument(
        "--answers-file",
        type=Path,
        default=None,
        help="JSON object mapping question ids to answers, used before any prompt",
    )
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        help="Never prompt; unanswered blockers halt the run",
    )
    parser.add_argument("--use-llm", action="store_true", help="Use the OpenAI-backed collaborator for extraction and phrasing")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_document(path: Path) -> SourceDocument:
    if not path.is_file():
        raise FileNotFoundError(f"Input file does not exist: {path}")
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        raise ValueError(f"Input file is empty: {path}")
    return SourceDocument(name=path.name, text=text)


def load_answers(path: Path | None) -> dict[str, str]:
    if path is None:
        return {}
    if not path.is_file():
        raise FileNotFoundError(f"Answers file does not exist: {path}")
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict) or not all(isinstance(value, str) for value in payload.values()):
        raise ValueError(f"Answers file must hold a JSON object of question id -> answer: {path}")
    return {str(key): value for key, value in payload.items()}


def file_answer_provider(answers: Mapping[str, str]) -> Callable[[InterviewRound], dict[str, str] | None]:
    """Answer rounds from a fixed mapping; None once it holds nothing for the pending questions."""

    def provide(batch: InterviewRound) -> dict[str, str] | None:
        found = {question.id: answers[question.id] for question in batch.questions if answers.get(question.id, "").strip()}
        return found or None

    return provide


def prompt_for_answers(pending: Mapping[str, Any], prefilled: Mapping[str, str]) -> dict[str, str]:
    answers: dict[str, str] = {}
    prompts = pending.get("prompts", {})
    questions = pending.get("questions", [])
    print(f"\nInterview round {pending.get('roundNumber')}: {len(questions)} question(s). Enter 'not required' to waive.")
    for question in questions:
        question_id = question["id"]
        if question_id in prefilled:
            answers[question_id] = prefilled[question_id]
            continue
        print(f"\n[{question_id}] {prompts.get(question_id, question['text'])}")
        answers[question_id] = input("> ").strip()
    return answers


def report(result: PipelineResult) -> int:
    if result.finalized:
        print(f"finalized=true output={result.output}")
        for relative in sorted(result.files):
            print(f"  {relative}")
        return 0
    print(result.context_digest)
    print(result.unresolved, file=sys.stderr)
    return 2


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        if args.use_llm:
            settings = replace(settings, use_llm=True)
        primary = load_document(args.input)
        contexts = [load_document(path) for path in args.context]
        answers = load_answers(args.answers_file)
        collaborator = build_collaborator(settings, repo_root=Path.cwd())
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to load input: %s", exc)
        return 1

    interactive = not args.non_interactive
    pipeline = BundlePipeline(
        primary,
        contexts,
        output_root=args.output_root,
        title=args.title,
        settings=settings,
        collaborator=collaborator,
        answer_provider=file_answer_provider(answers) if answers and not interactive else None,
        enable_interrupts=interactive,
    )
    try:
        result = pipeline.run()
        while result.awaiting_answers:
            try:
                round_answers = prompt_for_answers(result.pending_round or {}, answers)
            except (EOFError, KeyboardInterrupt):
                result = pipeline.cancel()
                break
            result = pipeline.resume(round_answers)
    except (BundlegateError, ValueError) as exc:
        logging.error("Run failed: %s", exc)
        return 1

    return report(result)


if __name__ == "__main__":
    raise SystemExit(main())
