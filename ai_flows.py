"""AI generation services: weekly outlines, daily study tasks, flashcards and study room chat."""

import json
import logging
import os
import re
from datetime import date, timedelta

from openai import OpenAI

logger = logging.getLogger('synergylearn.ai')

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

SCHEDULE_DURATIONS = {'1 month': 4, '1 year': 52, '2 years': 104}
DAYS_OF_WEEK = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

_client = None


class AIFlowError(Exception):
    """The model answered with something we cannot use."""


def get_client():
    global _client
    if _client is None:
        _client = OpenAI(api_key=os.getenv("OPENAI_API_KEY"))
    return _client


def _complete_json(prompt, client=None):
    client = client or get_client()
    response = client.chat.completions.create(
        model=OPENAI_MODEL,
        messages=[{"role": "user", "content": prompt}],
        response_format={"type": "json_object"}
    )
    content = response.choices[0].message.content
    try:
        data = json.loads(content or "")
    except json.JSONDecodeError as e:
        logger.error(f"Model returned invalid JSON: {content!r}")
        raise AIFlowError("The AI response was not valid JSON.") from e
    if not isinstance(data, dict):
        raise AIFlowError("The AI response was not a JSON object.")
    return data


def _require_text(value, message):
    if not isinstance(value, str) or not value.strip():
        raise ValueError(message)
    return value.strip()


def _check_holidays(value):
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(day in DAYS_OF_WEEK for day in value):
        raise ValueError(f"weekly_holidays must be a list of day names ({', '.join(DAYS_OF_WEEK)})")
    return list(value)


def _check_time(value, field):
    if not isinstance(value, str) or not _TIME_PATTERN.match(value):
        raise ValueError(f"{field} must be in HH:MM format")
    return value


def _parse_date(value, field):
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a date in YYYY-MM-DD format")


def _availability_lines(working_day_start, working_day_end, weekly_holidays, holiday_start, holiday_end, utilize_holidays):
    lines = [f"- Working days: {working_day_start} to {working_day_end}"]
    if weekly_holidays:
        lines.append(f"- Weekly holidays: {', '.join(weekly_holidays)}")
        if holiday_start and holiday_end:
            lines.append(f"- Holiday availability: {holiday_start} to {holiday_end}")
    else:
        lines.append("- Weekly holidays: none")
    lines.append(f"- Use holidays for study if needed: {'yes' if utilize_holidays else 'no'}")
    return "\n".join(lines)


def week_date_ranges(start_date, total_weeks):
    """Seven-day windows starting at ``start_date``; computed locally, not by the model."""
    ranges = []
    current = start_date
    for week_number in range(1, total_weeks + 1):
        ranges.append({
            'weekNumber': week_number,
            'startDate': current.isoformat(),
            'endDate': (current + timedelta(days=6)).isoformat(),
        })
        current += timedelta(days=7)
    return ranges


def generate_weekly_outline(goal, schedule_duration, working_day_start, working_day_end,
                            weekly_holidays=None, holiday_start=None, holiday_end=None,
                            utilize_holidays=False, start_date=None, client=None):
    """Breaks an overall learning goal into one topic per week."""
    goal = _require_text(goal, "A learning goal is required")
    if schedule_duration not in SCHEDULE_DURATIONS:
        raise ValueError(f"schedule_duration must be one of {', '.join(SCHEDULE_DURATIONS)}")
    _check_time(working_day_start, "working_day_start")
    _check_time(working_day_end, "working_day_end")
    if holiday_start:
        _check_time(holiday_start, "holiday_start")
    if holiday_end:
        _check_time(holiday_end, "holiday_end")
    start = _parse_date(start_date, "start_date") if start_date else date.today()
    weekly_holidays = _check_holidays(weekly_holidays)

    ranges = week_date_ranges(start, SCHEDULE_DURATIONS[schedule_duration])
    prompt = f"""
    You are an expert learning planner. Break the learner's overall goal into one focused goal or topic per week.

    Overall learning goal: {goal}
    Schedule duration: {schedule_duration} ({len(ranges)} weeks), starting {start.isoformat()}
    Availability:
    {_availability_lines(working_day_start, working_day_end, weekly_holidays, holiday_start, holiday_end, utilize_holidays)}

    The weeks are already fixed:
    {json.dumps(ranges)}

    Your response MUST be a single, valid JSON object with two keys:
    - "weeklyOutline": an array with exactly one object per week above, each with "weekNumber" (integer) and "goalOrTopic" (string).
    - "summary": a short overview of the plan.
    Topics must build on each other in a logical order.
    """
    data = _complete_json(prompt, client)

    topics = {}
    for item in data.get('weeklyOutline') or []:
        if isinstance(item, dict) and item.get('goalOrTopic'):
            try:
                topics[int(item.get('weekNumber'))] = str(item['goalOrTopic']).strip()
            except (TypeError, ValueError):
                continue
    if not topics:
        raise AIFlowError("The AI response did not contain a weekly outline.")

    outline = []
    for week in ranges:
        topic = topics.get(week['weekNumber'])
        if topic is None:
            logger.warning(f"Outline is missing week {week['weekNumber']}; filling with a review week")
            topic = "Review and consolidate previous weeks"
        outline.append(dict(week, goalOrTopic=topic))
    return {'weeklyOutline': outline, 'summary': data.get('summary') or ''}


def generate_daily_tasks(period_goal, period_start_date, working_day_start, working_day_end,
                         period_duration_days=7, weekly_holidays=None, holiday_start=None,
                         holiday_end=None, utilize_holidays=False, client=None):
    """Day-by-day study tasks for one period of the outline (usually a week)."""
    period_goal = _require_text(period_goal, "A period goal is required")
    start = _parse_date(period_start_date, "period_start_date")
    if not isinstance(period_duration_days, int) or not 1 <= period_duration_days <= 31:
        raise ValueError("period_duration_days must be between 1 and 31")
    _check_time(working_day_start, "working_day_start")
    _check_time(working_day_end, "working_day_end")
    if holiday_start:
        _check_time(holiday_start, "holiday_start")
    if holiday_end:
        _check_time(holiday_end, "holiday_end")
    weekly_holidays = _check_holidays(weekly_holidays)

    days = [start + timedelta(days=i) for i in range(period_duration_days)]
    calendar = [{'date': d.isoformat(), 'dayOfWeek': DAYS_OF_WEEK[d.weekday()]} for d in days]
    prompt = f"""
    You are an expert study coach. Create a daily study plan for the goal "{period_goal}".

    Availability:
    {_availability_lines(working_day_start, working_day_end, weekly_holidays, holiday_start, holiday_end, utilize_holidays)}

    Plan every one of these days, in order:
    {json.dumps(calendar)}

    Your response MUST be a single, valid JSON object with two keys:
    - "tasks": an array of objects, one per day, each with "date" (YYYY-MM-DD), "dayOfWeek", "topic",
      "estimatedDuration" (e.g. "2 hours") and "timeSlot" (e.g. "09:00 - 11:00"). Holidays that are not used for study get the topic "Rest Day".
    - "summary": one or two sentences describing the plan.
    """
    data = _complete_json(prompt, client)

    tasks = []
    for item in data.get('tasks') or []:
        if not isinstance(item, dict) or not item.get('date') or not item.get('topic'):
            continue
        task = {
            'date': item['date'],
            'dayOfWeek': item.get('dayOfWeek') or '',
            'topic': item['topic'],
        }
        if item.get('estimatedDuration'):
            task['estimatedDuration'] = item['estimatedDuration']
        if item.get('timeSlot'):
            task['timeSlot'] = item['timeSlot']
        tasks.append(task)
    if not tasks:
        raise AIFlowError("The AI response did not contain any daily tasks.")
    return {'tasks': tasks, 'summary': data.get('summary') or ''}


def parse_flashcards(raw_cards):
    """Split "question:::answer" strings into front/back dicts, skipping malformed ones."""
    flashcards = []
    for raw in raw_cards:
        if not isinstance(raw, str) or ':::' not in raw:
            continue
        front, back = raw.split(':::', 1)
        if front.strip() and back.strip():
            flashcards.append({'front': front.strip(), 'back': back.strip()})
    return flashcards


def generate_flashcards(notes, client=None):
    """Flashcards and plain-text quiz items from a learner's notes."""
    notes = _require_text(notes, "Notes are required to generate flashcards")
    prompt = f"""
    You are a helpful assistant that turns study notes into flashcards and quiz items.

    Your response MUST be a single, valid JSON object with two keys:
    - "flashcards": an array of strings, each formatted as "question:::answer".
    - "quizzes": an array of strings, each a self-contained quiz item with its options (if any) and the answer.
    Use plain text only, no Markdown.

    Notes:
    ---
    {notes}
    """
    data = _complete_json(prompt, client)
    flashcards = parse_flashcards(data.get('flashcards') or [])
    quizzes = [q.strip() for q in data.get('quizzes') or [] if isinstance(q, str) and q.strip()]
    if not flashcards and not quizzes:
        raise AIFlowError("The AI response did not contain any flashcards or quizzes.")
    return {'flashcards': flashcards, 'quizzes': quizzes}


EMPTY_HELP_REPLY = ("It looks like you asked for help but didn't provide a specific question. "
                    "How can I assist you?")
EMPTY_CHAT_SUMMARY = "There are no messages to summarize."


def chat_assistant(user_query, client=None):
    """Answer a question a learner addressed to the study room assistant."""
    if not isinstance(user_query, str):
        raise ValueError("user_query must be a string")
    if not user_query.strip():
        return EMPTY_HELP_REPLY
    prompt = f"""
    You are a friendly and helpful AI Study Assistant in a collaborative chat room.
    A student has invoked you using "@help_me" and provided the following query:
    "{user_query.strip()}"

    Provide a concise, helpful, and encouraging response to assist the student.
    If the query is unclear, very broad, or outside of a typical study context, ask for clarification
    or politely say you cannot help with that type of query.
    Focus on explaining concepts, offering study tips, or pointing to resources.
    Use plain text only, no Markdown.

    Your response MUST be a single, valid JSON object with one key, "aiResponse" (string).
    """
    data = _complete_json(prompt, client)
    reply = data.get('aiResponse')
    if not isinstance(reply, str) or not reply.strip():
        raise AIFlowError("The AI response did not contain an answer.")
    return reply.strip()


def summarize_chat(messages, client=None):
    """Summarise a study room discussion. ``messages`` are dicts with userName and text, oldest first."""
    if not isinstance(messages, (list, tuple)):
        raise ValueError("messages must be a list")
    lines = []
    for message in messages:
        if not isinstance(message, dict) or not isinstance(message.get('text'), str):
            raise ValueError("Each message needs a text field")
        lines.append(f"- {message.get('userName') or 'Someone'}: {message['text']}")
    if not lines:
        return EMPTY_CHAT_SUMMARY

    chat_history = "\n".join(lines)
    prompt = f"""
    You are an AI assistant in a collaborative study room. Summarize the following chat discussion.
    Focus on the key topics, main questions asked, important points made, and any conclusions reached.
    Keep it concise so someone can quickly catch up. Use plain text only, no Markdown.

    Chat history:
{chat_history}

    Your response MUST be a single, valid JSON object with one key, "summary" (string).
    """
    data = _complete_json(prompt, client)
    summary = data.get('summary')
    if not isinstance(summary, str) or not summary.strip():
        raise AIFlowError("The AI response did not contain a summary.")
    return summary.strip()
