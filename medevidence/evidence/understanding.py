"""
Query Understanding for MedEvidence

Deterministic, pattern-based reading of a clinical question:
- Entity extraction across eight categories (plus abbreviation expansion)
- Intent detection in a fixed priority order
- Question type, specificity, urgency and complexity grading
- Query projections for semantic, keyword and entity search, and MeSH headings
- Medical domain and specialty tagging

Pure and synchronous. Never raises; degenerate input yields
QueryUnderstanding.empty().
"""

import logging
import re
from dataclasses import dataclass

from medevidence.evidence.models import EntityBag, QueryUnderstanding

logger = logging.getLogger(__name__)

# ============================================
# Entity Lexicons
# ============================================

ENTITY_PATTERNS: dict[str, list[re.Pattern]] = {
    "conditions": [
        re.compile(
            r"\b(hypertension|diabetes|asthma|copd|heart failure|stroke|"
            r"myocardial infarction|cancer|tumou?r|pneumonia|sepsis|"
            r"atrial fibrillation|obesity|depression|dementia|epilepsy|"
            r"tuberculosis|hiv|covid-19|migraine|osteoporosis|anemia|"
            r"preeclampsia|gestational diabetes|chronic kidney disease)\b",
            re.IGNORECASE,
        ),
        re.compile(r"\b([A-Z][a-z]+ (?:disease|disorder|syndrome))\b"),
    ],
    "drugs": [
        re.compile(
            r"\b(aspirin|metformin|lisinopril|atorvastatin|metoprolol|warfarin|"
            r"insulin|morphine|heparin|apixaban|rivaroxaban|amoxicillin|"
            r"ibuprofen|acetaminophen|paracetamol|prednisone|levothyroxine|"
            r"amlodipine|furosemide|clopidogrel|semaglutide|empagliflozin)\b",
            re.IGNORECASE,
        ),
        # Suffix matches need a stem of two or more letters ("April" is not a drug)
        re.compile(
            r"\b([a-z]{2,}(?:pril|olol|sartan|statin|prazole|mycin|cycline|cillin|"
            r"gliflozin|gliptin|glutide))\b",
            re.IGNORECASE,
        ),
    ],
    "procedures": [
        re.compile(
            r"\b(surgery|operation|biopsy|endoscopy|colonoscopy|angiography|"
            r"catheterization|angioplasty|transplant(?:ation)?|dialysis|"
            r"intubation|stenting|bypass|cesarean section|chemotherapy|"
            r"radiotherapy|vaccination)\b",
            re.IGNORECASE,
        ),
    ],
    "symptoms": [
        re.compile(
            r"\b(chest pain|shortness of breath|headache|pain|fever|nausea|"
            r"vomiting|dizziness|fatigue|cough|palpitations|syncope|edema|"
            r"rash|diarrhea|bleeding)\b",
            re.IGNORECASE,
        ),
    ],
    "tests": [
        re.compile(
            r"\b(ct|mri|x-ray|ultrasound|ekg|ecg|echocardiogram|blood test|"
            r"lab|biomarker|troponin|hba1c|d-dimer|spirometry|mammography|"
            r"pet scan)\b",
            re.IGNORECASE,
        ),
    ],
    "anatomy": [
        re.compile(
            r"\b(heart|liver|kidney|lung|brain|stomach|intestine|artery|vein|"
            r"colon|pancreas|thyroid|bone|skin)\b",
            re.IGNORECASE,
        ),
    ],
    "demographics": [
        re.compile(
            r"\b(pediatric|geriatric|elderly|older adults?|adults?|child(?:ren)?|"
            r"infants?|neonates?|adolescents?|male|female|men|women|"
            r"pregnant|pregnancy|postmenopausal)\b",
            re.IGNORECASE,
        ),
    ],
    "outcomes": [
        re.compile(
            r"\b(mortality|survival|recurrence|remission|complications?|"
            r"adverse events?|hospitali[sz]ation|readmission|quality of life|"
            r"relapse)\b",
            re.IGNORECASE,
        ),
    ],
}

# Condition abbreviations, matched case-sensitively
CONDITION_ABBREVIATIONS: dict[str, str] = {
    "MI": "myocardial infarction",
    "CHF": "congestive heart failure",
    "DVT": "deep vein thrombosis",
    "PE": "pulmonary embolism",
    "COPD": "chronic obstructive pulmonary disease",
    "HTN": "hypertension",
    "DM": "diabetes mellitus",
    "CAD": "coronary artery disease",
    "CVA": "cerebrovascular accident",
    "TIA": "transient ischemic attack",
    "AFib": "atrial fibrillation",
    "ACS": "acute coronary syndrome",
    "STEMI": "st elevation myocardial infarction",
    "NSTEMI": "non st elevation myocardial infarction",
    "CKD": "chronic kidney disease",
    "AKI": "acute kidney injury",
    "ARDS": "acute respiratory distress syndrome",
    "UTI": "urinary tract infection",
    "URI": "upper respiratory infection",
    "TB": "tuberculosis",
}

# Pre-compiled abbreviation patterns (compiled once at module load, not per query)
_COMPILED_ABBREVIATION_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\b" + re.escape(abbr) + r"\b"), expansion)
    for abbr, expansion in CONDITION_ABBREVIATIONS.items()
]

# ============================================
# Intent Patterns (priority order)
# ============================================

INTENT_PATTERNS: list[tuple[str, re.Pattern]] = [
    (
        "dosing",
        re.compile(
            r"\b(dose|doses|dosing|dosage|mg|how much|titrat\w*|loading dose)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "comparison",
        re.compile(
            r"\b(compare[sd]?|comparing|comparison|versus|vs|better than|"
            r"difference between)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "mechanism",
        re.compile(
            r"\b(mechanism|how does|why does|pathophysiology|pathogenesis|"
            r"mode of action)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "safety",
        re.compile(
            r"\b(safe|safety|adverse|side effects?|contraindicat\w*|toxicity|"
            r"interactions?|harm\w*)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "guideline",
        re.compile(
            r"\b(guidelines?|recommendations?|recommended|standard of care|"
            r"protocol|consensus)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "diagnosis",
        re.compile(
            r"\b(diagnos\w*|test|testing|screen\w*|detect\w*|workup|"
            r"biomarkers?|differential)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "outcome",
        re.compile(
            r"\b(prognosis|outcomes?|survival|mortality|recurrence|efficacy|"
            r"effective|effectiveness)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "treatment",
        re.compile(
            r"\b(treat\w*|therapy|therapies|medications?|drugs?|management|"
            r"manage|first-line)\b",
            re.IGNORECASE,
        ),
    ),
]

_COMPARATIVE_PATTERN = re.compile(r"\b(vs|versus)\b", re.IGNORECASE)
_CAUSAL_PATTERN = re.compile(r"\b(why|cause[sd]?|causing)\b", re.IGNORECASE)
_PROCEDURAL_PATTERN = re.compile(
    r"\bhow (?:to|should|do)\b|\b(steps?|protocol|manag(?:e|ement|ing))\b",
    re.IGNORECASE,
)

_HIGH_URGENCY_PATTERN = re.compile(
    r"\b(emergency|urgent|urgently|life-threatening|overdose|anaphylaxis|"
    r"cardiac arrest|stat)\b",
    re.IGNORECASE,
)
_MEDIUM_URGENCY_PATTERN = re.compile(
    r"\b(acute|acutely|sudden|suddenly|severe|rapid|rapidly)\b", re.IGNORECASE
)

# ============================================
# Projection Tables
# ============================================

STOP_WORDS: set[str] = {
    "a", "an", "and", "are", "as", "at", "be", "but", "by", "can", "do",
    "does", "for", "from", "had", "has", "have", "he", "her", "his", "how",
    "i", "if", "in", "into", "is", "it", "its", "me", "my", "of", "on",
    "or", "our", "out", "own", "she", "should", "so", "than", "that", "the",
    "their", "them", "then", "there", "these", "they", "this", "to", "too",
    "up", "us", "very", "was", "we", "were", "what", "what's", "when",
    "where", "which", "while", "who", "whom", "why", "will", "with",
    "would", "you", "your",
}  # fmt: skip

MESH_HEADINGS: dict[str, str] = {
    "aspirin": "Aspirin",
    "metformin": "Metformin",
    "warfarin": "Warfarin",
    "insulin": "Insulin",
    "heparin": "Heparin",
    "atorvastatin": "Atorvastatin",
    "lisinopril": "Lisinopril",
    "metoprolol": "Metoprolol",
    "hypertension": "Hypertension",
    "diabetes": "Diabetes Mellitus",
    "diabetes mellitus": "Diabetes Mellitus",
    "gestational diabetes": "Diabetes, Gestational",
    "asthma": "Asthma",
    "copd": "Pulmonary Disease, Chronic Obstructive",
    "chronic obstructive pulmonary disease": "Pulmonary Disease, Chronic Obstructive",
    "heart failure": "Heart Failure",
    "congestive heart failure": "Heart Failure",
    "myocardial infarction": "Myocardial Infarction",
    "stroke": "Stroke",
    "cerebrovascular accident": "Stroke",
    "atrial fibrillation": "Atrial Fibrillation",
    "cancer": "Neoplasms",
    "tumor": "Neoplasms",
    "tumour": "Neoplasms",
    "pneumonia": "Pneumonia",
    "sepsis": "Sepsis",
    "depression": "Depression",
    "dementia": "Dementia",
    "tuberculosis": "Tuberculosis",
    "deep vein thrombosis": "Venous Thrombosis",
    "pulmonary embolism": "Pulmonary Embolism",
    "chronic kidney disease": "Renal Insufficiency, Chronic",
    "preeclampsia": "Pre-Eclampsia",
    "pregnancy": "Pregnancy",
    "pregnant": "Pregnancy",
    "elderly": "Aged",
    "older adults": "Aged",
    "child": "Child",
    "children": "Child",
    "infant": "Infant",
    "infants": "Infant",
    "adolescent": "Adolescent",
    "adolescents": "Adolescent",
    "mortality": "Mortality",
    "chest pain": "Chest Pain",
    "headache": "Headache",
    "fever": "Fever",
    "dialysis": "Renal Dialysis",
    "chemotherapy": "Drug Therapy",
}

DOMAIN_TABLE: list[tuple[str, str, re.Pattern]] = [
    (
        "cardiovascular",
        "cardiology",
        re.compile(
            r"\b(heart|cardiac|cardio\w*|hypertension|blood pressure|myocardial|"
            r"coronary|atrial fibrillation|arrhythmia|statins?|cholesterol|angina)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "oncology",
        "oncology",
        re.compile(
            r"\b(cancer|tumou?rs?|carcinoma|lymphoma|leukemia|chemotherapy|"
            r"oncolog\w*|metasta\w*)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "endocrine",
        "endocrinology",
        re.compile(
            r"\b(diabetes|insulin|metformin|thyroid|glucose|obesity|hba1c|"
            r"endocrin\w*)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "respiratory",
        "pulmonology",
        re.compile(
            r"\b(asthma|copd|lungs?|pneumonia|respiratory|pulmonary|"
            r"shortness of breath|spirometry)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "infectious disease",
        "infectious disease",
        re.compile(
            r"\b(infections?|sepsis|antibiotics?|viral|bacterial|tuberculosis|"
            r"hiv|covid-19|vaccines?|vaccination)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "obstetrics",
        "obstetrics",
        re.compile(
            r"\b(pregnan\w*|prenatal|postpartum|obstetric\w*|gestational|"
            r"preeclampsia|cesarean)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "neurological",
        "neurology",
        re.compile(
            r"\b(stroke|seizures?|epilepsy|brain|dementia|alzheimer\w*|"
            r"parkinson\w*|migraine|headache|neurolog\w*)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "renal",
        "nephrology",
        re.compile(
            r"\b(kidney|renal|dialysis|ckd|nephro\w*)\b", re.IGNORECASE
        ),
    ),
    (
        "gastrointestinal",
        "gastroenterology",
        re.compile(
            r"\b(liver|hepat\w*|stomach|intestin\w*|bowel|colon|gastr\w*|"
            r"crohn\w*|colitis|colonoscopy|endoscopy)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "mental health",
        "psychiatry",
        re.compile(
            r"\b(depression|anxiety|schizophrenia|bipolar|psychiatr\w*|"
            r"suicid\w*|antidepressants?)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "pediatric",
        "pediatrics",
        re.compile(
            r"\b(child(?:ren)?|infants?|pediatric|paediatric|neonat\w*|"
            r"adolescents?)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "geriatric",
        "geriatrics",
        re.compile(r"\b(elderly|older adults?|geriatric)\b", re.IGNORECASE),
    ),
    (
        "emergency",
        "emergency medicine",
        re.compile(
            r"\b(emergency|trauma|resuscitation|cardiac arrest|overdose|"
            r"anaphylaxis|shock)\b",
            re.IGNORECASE,
        ),
    ),
]

_TOKEN_PATTERN = re.compile(r"[a-z0-9][a-z0-9'\-]*")


# ============================================
# Extraction Helpers
# ============================================


def _dedupe(values: list[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


def extract_entities(text: str) -> EntityBag:
    """Extract lower-cased entity surface strings per category."""
    found: dict[str, list[str]] = {}
    for category, patterns in ENTITY_PATTERNS.items():
        hits: list[str] = []
        for pattern in patterns:
            hits.extend(m.group(0).lower() for m in pattern.finditer(text))
        found[category] = hits

    for pattern, expansion in _COMPILED_ABBREVIATION_PATTERNS:
        if pattern.search(text):
            found["conditions"].append(expansion)

    return EntityBag(**{category: _dedupe(hits) for category, hits in found.items()})


def detect_intents(text: str) -> list[str]:
    """All matching intents, in priority order."""
    return [intent for intent, pattern in INTENT_PATTERNS if pattern.search(text)]


def _question_type(text: str, intents: list[str]) -> str:
    if "comparison" in intents or _COMPARATIVE_PATTERN.search(text):
        return "comparative"
    if "mechanism" in intents or _CAUSAL_PATTERN.search(text):
        return "causal"
    if _PROCEDURAL_PATTERN.search(text):
        return "procedural"
    return "factual"


def _specificity(word_count: int, entity_count: int) -> str:
    if word_count > 10 or entity_count >= 3:
        return "high"
    if word_count > 5 or entity_count >= 1:
        return "medium"
    return "low"


def _urgency(text: str) -> str:
    if _HIGH_URGENCY_PATTERN.search(text):
        return "high"
    if _MEDIUM_URGENCY_PATTERN.search(text):
        return "medium"
    return "low"


def _complexity(category_count: int) -> str:
    if category_count >= 3:
        return "complex"
    if category_count >= 1:
        return "moderate"
    return "simple"


def build_keyword_query(text: str) -> str:
    """Lower-case the query and drop stop words."""
    tokens = _TOKEN_PATTERN.findall(text.lower())
    kept = [t for t in tokens if t not in STOP_WORDS]
    return " ".join(kept) if kept else text.strip().lower()


def map_mesh_terms(entities: EntityBag) -> tuple[str, ...]:
    """Map entities to MeSH headings, falling back to title-cased names."""
    headings = [MESH_HEADINGS[e] for e in entities.all() if e in MESH_HEADINGS]
    if not headings:
        headings = [e.title() for e in (*entities.conditions, *entities.drugs)]
    return _dedupe(headings)


def tag_domains(text: str) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Return (medical_domains, specialties) matched by the query vocabulary."""
    domains: list[str] = []
    specialties: list[str] = []
    for domain, specialty, pattern in DOMAIN_TABLE:
        if pattern.search(text):
            domains.append(domain)
            specialties.append(specialty)
    return _dedupe(domains), _dedupe(specialties)


# ============================================
# Entity Concepts
# ============================================

# Expansion -> abbreviation, so either spelling evidences the same concept
_EXPANSION_ABBREVIATIONS: dict[str, str] = {
    expansion: abbr for abbr, expansion in CONDITION_ABBREVIATIONS.items()
}


def _whole_word(term: str, flags: int = re.IGNORECASE) -> re.Pattern:
    return re.compile(r"\b" + re.escape(term) + r"\b", flags)


@dataclass(frozen=True)
class EntityConcept:
    """A query concept and the whole-word spellings that evidence it."""

    name: str
    patterns: tuple[re.Pattern, ...]

    def matches(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.patterns)


def entity_concepts(entities: list[str]) -> list[EntityConcept]:
    """
    Group entity strings into concepts for matching against evidence text.

    An abbreviation and its expansion ("copd" and "chronic obstructive
    pulmonary disease") form one concept. The upper-case abbreviation is
    matched case-sensitively, like abbreviation extraction itself.
    """
    grouped: dict[str, list[str]] = {}
    for entity in entities:
        abbr = _EXPANSION_ABBREVIATIONS.get(entity)
        grouped.setdefault(abbr.lower() if abbr else entity, []).append(entity)

    concepts: list[EntityConcept] = []
    for forms in grouped.values():
        patterns = [_whole_word(form) for form in forms]
        patterns += [
            _whole_word(_EXPANSION_ABBREVIATIONS[form], flags=0)
            for form in forms
            if form in _EXPANSION_ABBREVIATIONS
        ]
        concepts.append(EntityConcept(name=forms[0], patterns=tuple(patterns)))
    return concepts


# ============================================
# Public API
# ============================================


def understand(text: str | None) -> QueryUnderstanding:
    """Build a fully populated QueryUnderstanding for a clinical question."""
    if not text or not isinstance(text, str) or not text.strip():
        return QueryUnderstanding.empty(text.strip() if isinstance(text, str) else "")

    query = text.strip()
    entities = extract_entities(query)
    intents = detect_intents(query)
    primary = intents[0] if intents else "general"
    secondary = tuple(intents[1:])
    intent_set = set(intents)

    all_entities = entities.all()
    domains, specialties = tag_domains(query)

    understanding = QueryUnderstanding(
        primary_intent=primary,
        secondary_intents=secondary,
        question_type=_question_type(query, intents),
        specificity=_specificity(len(query.split()), len(all_entities)),
        entities=entities,
        requires_treatment="treatment" in intent_set,
        requires_diagnosis="diagnosis" in intent_set,
        requires_mechanism="mechanism" in intent_set,
        requires_outcome="outcome" in intent_set,
        requires_safety="safety" in intent_set,
        requires_dosing="dosing" in intent_set,
        requires_guidelines="guideline" in intent_set,
        requires_comparison="comparison" in intent_set,
        semantic_query=query,
        keyword_query=build_keyword_query(query),
        entity_query=" ".join(all_entities),
        mesh_terms=map_mesh_terms(entities),
        medical_domains=domains,
        specialties=specialties,
        urgency=_urgency(query),
        complexity=_complexity(len(entities.non_empty_categories())),
    )

    logger.debug(
        "Query understanding: intent=%s secondary=%s entities=%d",
        understanding.primary_intent,
        ",".join(understanding.secondary_intents) or "-",
        len(all_entities),
    )
    return understanding
