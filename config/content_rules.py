"""Static content rules for actor submissions.

Deny-lists and keyword tables used by the description quality gate, the email
domain gate and gender normalization. Extend here, not in the pipeline code.
"""

# Known throwaway mailbox providers
DISPOSABLE_EMAIL_DOMAINS = frozenset({
    "10minutemail.com",
    "tempmail.org",
    "guerrillamail.com",
    "mailinator.com",
    "yopmail.com",
    "trashmail.com",
    "sharklasers.com",
    "getnada.com",
    "dispostable.com",
    "throwawaymail.com",
})

SPAM_PATTERNS = [
    r"\b(viagra|cialis|casino|lottery|winner|congratulations)\b",
    r"\b(click here|visit now|act now|limited time)\b",
    r"\$\d+|\d+\$",
    r"\b\d{10,}\b",  # phone / card numbers
]

# At least two of these three categories must show up in a description.
INFORMATION_CATEGORIES = {
    "name": ["name", "called", "known as", "i am", "my name"],
    "physical": ["tall", "height", "weight", "hair", "eyes", "age", "years old", "born"],
    "location": ["live", "from", "address", "street", "city", "state", "country"],
}

MIN_INFORMATION_CATEGORIES = 2
MIN_WORD_COUNT = 5
MIN_DISTINCT_CHARACTERS = 5

GENDER_SYNONYMS = {
    "male": ["male", "m", "man"],
    "female": ["female", "f", "woman"],
    "other": ["other", "non-binary", "nb"],
    "prefer_not_to_say": ["prefer not to say", "prefer_not_to_say", "unknown"],
}

GENDER_LABELS = {
    "male": "Male",
    "female": "Female",
    "other": "Other",
    "prefer_not_to_say": "Prefer not to say",
}

PROMPT_VALIDATION_MESSAGE = (
    "Please enter your first name and last name, and also provide your address."
)
