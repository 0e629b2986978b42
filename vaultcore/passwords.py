# vaultcore/passwords.py
import re
import secrets

LOWERCASE = 'abcdefghijklmnopqrstuvwxyz'
UPPERCASE = 'ABCDEFGHIJKLMNOPQRSTUVWXYZ'
NUMBERS = '0123456789'
SYMBOLS = '!@#$%^&*()_+-=[]{}|;:,.<>?'
SIMILAR_CHARACTERS = '0O1lI'

MIN_LENGTH = 4
MAX_LENGTH = 128

STRENGTH_LABELS = (
    (7, 'Very strong'),
    (5, 'Strong'),
    (3, 'Medium'),
    (1, 'Weak'),
)

def generate_password(length=16, include_uppercase=True, include_lowercase=True,
                      include_numbers=True, include_symbols=True, exclude_similar=True):
    """Generate a random password from the selected character classes"""
    if not isinstance(length, int) or not MIN_LENGTH <= length <= MAX_LENGTH:
        raise ValueError(f"Password length must be between {MIN_LENGTH} and {MAX_LENGTH}")

    charset = ''
    if include_lowercase:
        charset += LOWERCASE
    if include_uppercase:
        charset += UPPERCASE
    if include_numbers:
        charset += NUMBERS
    if include_symbols:
        charset += SYMBOLS

    if exclude_similar:
        charset = ''.join(c for c in charset if c not in SIMILAR_CHARACTERS)

    if not charset:
        raise ValueError('At least one character type must be included')

    return ''.join(secrets.choice(charset) for _ in range(length))

def analyze_password_strength(password):
    """
    Score a password from 0 to 7.

    One point each for length >= 8, >= 12, >= 16, and for lowercase,
    uppercase, digits and symbols. Feedback flags repeated characters,
    common sequences and obvious words without changing the score.
    """
    analysis = {
        'score': 0,
        'feedback': [],
        'strength': 'Very weak'
    }

    if not password:
        return analysis

    score = 0
    for threshold in (8, 12, 16):
        if len(password) >= threshold:
            score += 1

    for pattern in (r'[a-z]', r'[A-Z]', r'[0-9]', r'[^a-zA-Z0-9]'):
        if re.search(pattern, password):
            score += 1

    if re.search(r'(.)\1{2,}', password):
        analysis['feedback'].append('Avoid repeated characters')
    if re.search(r'123|abc|qwe', password, re.IGNORECASE):
        analysis['feedback'].append('Avoid common sequences')
    if re.search(r'password|senha|123456', password, re.IGNORECASE):
        analysis['feedback'].append('Avoid obvious passwords')

    analysis['score'] = score
    for minimum, label in STRENGTH_LABELS:
        if score >= minimum:
            analysis['strength'] = label
            break

    return analysis
