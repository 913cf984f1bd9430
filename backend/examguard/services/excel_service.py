import pandas as pd
import json


REQUIRED_COLUMNS = [
    "question_text",
    "points",
    "options(json)",
    "correct_option",
]


def parse_excel(file):
    """
    Read a question sheet into payloads for ``QuestionCreate``.

    One row per question; ``options(json)`` is a JSON list of option texts and
    ``correct_option`` is the text of the one correct option.
    """
    df = pd.read_excel(file)

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        # KeyError so the upload route can answer 400 with the column name
        raise KeyError(missing[0])

    questions = []

    def get_json_value(value):
        return json.loads(value) if pd.notna(value) else []

    for index, row in df.iterrows():
        options = [str(o) for o in get_json_value(row["options(json)"])]
        correct = str(row["correct_option"]).strip() if pd.notna(row["correct_option"]) else ""
        if correct not in options:
            raise ValueError(f"Row {index + 2}: correct_option must be one of the options")

        points = row.get("points")
        q = {
            "question_text": str(row["question_text"]),
            "points": int(points) if pd.notna(points) else 1,
            "options": [{"option_text": o, "is_correct": o == correct} for o in options],
        }

        questions.append(q)

    return questions
