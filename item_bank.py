"""Question catalog seeding and JSON question-bank loading."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

import db
from schemas import SUBJECTS, Question

logger = logging.getLogger(__name__)


class ItemValidationError(ValueError):
    """Raised when a question from a JSON bank fails validation."""


SUBJECT_DESCRIPTIONS: Dict[str, str] = {name: f"IB {label} questions" for name, label in SUBJECTS.items()}

# Every entry must validate as a ``Question``; ids are assigned by the store.
QUESTION_BANK: List[Dict[str, Any]] = [
    {
        "subject": "mathematics",
        "type": "multiple_choice",
        "difficulty": "easy",
        "title": "Quadratic Equations",
        "content": "Solve for x: x² - 5x + 6 = 0",
        "options": {"A": "x = 2 or x = 3", "B": "x = 1 or x = 6", "C": "x = -2 or x = -3", "D": "x = 0 or x = 5"},
        "correctAnswer": "A",
        "explanation": "Factoring the equation: (x - 2)(x - 3) = 0, therefore x = 2 or x = 3",
        "tags": ["algebra", "quadratic equations", "factoring"],
        "learningObjectives": ["Solve quadratic equations by factoring", "Understand the zero product property"],
    },
    {
        "subject": "mathematics",
        "type": "calculation",
        "difficulty": "medium",
        "title": "Differentiation",
        "content": "Find the derivative of f(x) = 3x³ - 2x² + 5x - 1",
        "correctAnswer": "f'(x) = 9x² - 4x + 5",
        "explanation": "Using the power rule: d/dx(xⁿ) = nxⁿ⁻¹. Apply to each term: 3(3x²) - 2(2x) + 5(1) - 0 = 9x² - 4x + 5",
        "tags": ["calculus", "differentiation", "power rule"],
        "learningObjectives": ["Apply the power rule for differentiation", "Differentiate polynomial functions"],
    },
    {
        "subject": "mathematics",
        "type": "short_answer",
        "difficulty": "hard",
        "title": "Integration and Area",
        "content": "Calculate the area under the curve y = x² from x = 0 to x = 3",
        "correctAnswer": "9",
        "explanation": "Integrate x² from 0 to 3: ∫₀³ x² dx = [x³/3]₀³ = 27/3 - 0 = 9 square units",
        "tags": ["calculus", "integration", "area"],
        "learningObjectives": ["Calculate definite integrals", "Find area under curves using integration"],
    },
    {
        "subject": "physics",
        "type": "multiple_choice",
        "difficulty": "easy",
        "title": "Newton's Second Law",
        "content": "A force of 10N is applied to an object with a mass of 2kg. What is the acceleration?",
        "options": {"A": "5 m/s²", "B": "20 m/s²", "C": "2 m/s²", "D": "10 m/s²"},
        "correctAnswer": "A",
        "explanation": "Using Newton's Second Law: F = ma, therefore a = F/m = 10N / 2kg = 5 m/s²",
        "tags": ["mechanics", "force", "acceleration"],
        "learningObjectives": ["Apply Newton's Second Law", "Calculate acceleration from force and mass"],
    },
    {
        "subject": "physics",
        "type": "calculation",
        "difficulty": "medium",
        "title": "Kinetic Energy",
        "content": "Calculate the kinetic energy of a car with mass 1000kg moving at 20 m/s.",
        "correctAnswer": "200000 J or 200 kJ",
        "explanation": "Kinetic Energy = ½mv² = ½ × 1000kg × (20 m/s)² = 200,000 J = 200 kJ",
        "tags": ["energy", "kinetic energy", "mechanics"],
        "learningObjectives": ["Calculate kinetic energy"],
    },
    {
        "subject": "chemistry",
        "type": "calculation",
        "difficulty": "medium",
        "title": "Mole Calculations",
        "content": "Calculate the number of moles in 88g of carbon dioxide (CO₂). (Molar mass: C=12, O=16)",
        "correctAnswer": "2 moles",
        "explanation": "Molar mass of CO₂ = 12 + (16 × 2) = 44 g/mol. Number of moles = 88g / 44 g/mol = 2 moles",
        "tags": ["stoichiometry", "moles", "calculations"],
        "learningObjectives": ["Calculate number of moles", "Use molar mass in calculations"],
    },
    {
        "subject": "chemistry",
        "type": "short_answer",
        "difficulty": "hard",
        "title": "Equilibrium",
        "content": "For the reaction N₂(g) + 3H₂(g) ⇌ 2NH₃(g), explain what happens to the equilibrium position if the pressure is increased, according to Le Chatelier's principle.",
        "correctAnswer": "The equilibrium shifts to the right (towards products) because there are fewer moles of gas on the product side (2 moles) compared to the reactant side (4 moles total)",
        "explanation": "When pressure is increased, the equilibrium shifts to the side with fewer moles of gas. Reactants: 4 moles of gas. Products: 2 moles. Therefore, equilibrium shifts right.",
        "tags": ["equilibrium", "le chateliers principle", "pressure"],
        "learningObjectives": ["Apply Le Chatelier's principle", "Predict equilibrium shifts"],
    },
    {
        "subject": "biology",
        "type": "multiple_choice",
        "difficulty": "easy",
        "title": "Cell Structure",
        "content": "Which organelle is responsible for photosynthesis in plant cells?",
        "options": {"A": "Mitochondria", "B": "Chloroplast", "C": "Nucleus", "D": "Ribosome"},
        "correctAnswer": "B",
        "explanation": "Chloroplasts contain chlorophyll and are the site of photosynthesis in plant cells.",
        "tags": ["cell biology", "organelles", "photosynthesis"],
        "learningObjectives": ["Identify cell organelles and their functions"],
    },
    {
        "subject": "biology",
        "type": "essay",
        "difficulty": "hard",
        "title": "Evolution and Natural Selection",
        "content": "Using Darwin's theory of natural selection, explain how antibiotic resistance in bacteria is an example of evolution. Include discussion of variation, inheritance, selection pressure, and differential survival.",
        "correctAnswer": "Variation in bacterial populations includes resistance genes; these are inherited; antibiotic use applies selection pressure; resistant bacteria survive and reproduce; resistance genes increase in frequency over generations.",
        "explanation": "Susceptible bacteria die under antibiotics while resistant ones survive and pass on resistance genes, so the population becomes predominantly resistant.",
        "tags": ["evolution", "natural selection", "antibiotic resistance"],
        "learningObjectives": ["Apply natural selection theory to real-world examples"],
    },
]


def validate_entries(raw: Iterable[Any]) -> List[Question]:
    """Validate raw question mappings, rejecting duplicates by (subject, content)."""
    questions: List[Question] = []
    seen: set[tuple[str, str]] = set()
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ItemValidationError(f"Question #{index} must be an object")
        try:
            question = Question.model_validate(entry)
        except ValidationError as exc:
            raise ItemValidationError(f"Question #{index} is invalid: {exc}") from exc
        key = (question.subject, question.content)
        if key in seen:
            raise ItemValidationError(f"Duplicate question detected: {question.content[:60]}")
        seen.add(key)
        questions.append(question)
    return questions


def load_question_file(path: str | Path) -> List[Question]:
    source = Path(path)
    if not source.exists():
        raise FileNotFoundError(f"Question bank file not found: {source}")
    with source.open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, list):
        raise ItemValidationError("Question bank root must be a JSON list")
    return validate_entries(raw)


def sync_questions(questions: Iterable[Question]) -> List[int]:
    return [db.upsert_question(question) for question in questions]


# --------- Seed: write subjects and questions into DB ----------
_SEED_LOCK = threading.Lock()
_QUESTIONS_SEEDED = False


def ensure_seed_questions(extra_file: Optional[str | Path] = None) -> int:
    """Populate subjects and the built-in question bank exactly once per process."""

    global _QUESTIONS_SEEDED

    if _QUESTIONS_SEEDED:
        return 0

    with _SEED_LOCK:
        if _QUESTIONS_SEEDED:
            return 0

        db.init()
        for name, description in SUBJECT_DESCRIPTIONS.items():
            db.upsert_subject(name, SUBJECTS[name], description)

        questions = validate_entries(QUESTION_BANK)
        if extra_file:
            questions.extend(load_question_file(extra_file))
        ids = sync_questions(questions)
        _QUESTIONS_SEEDED = True
        logger.info("Seeded %d subjects and %d questions", len(SUBJECT_DESCRIPTIONS), len(ids))
        return len(ids)
