#!/usr/bin/env python3
"""
Keyword helpers
Normalizes trigger keywords, checks transcripts for them, cuts the text
spoken between the start and end keyword, and derives a fallback topic
when the summarizer is unavailable.
"""

import re
import sys
from typing import List, Optional

from nltk.tokenize import RegexpTokenizer

# Word tokens: letters/digits in any script, with inner apostrophes kept ("don't")
_TOKENIZER = RegexpTokenizer(r"[^\W_]+(?:'[^\W_]+)*")

# Words skipped when picking a fallback topic
FILLER_WORDS = {
    'a', 'an', 'the', 'and', 'or', 'but', 'so', 'um', 'uh', 'uhm', 'erm', 'er',
    'ah', 'oh', 'hmm', 'mm', 'like', 'well', 'okay', 'ok', 'yeah', 'yes', 'no',
    'i', 'me', 'my', 'you', 'your', 'we', 'our', 'it', 'its', "it's", 'is', 'am',
    'are', 'was', 'were', 'be', 'been', 'to', 'of', 'in', 'on', 'at', 'for',
    'with', 'that', 'this', 'just', 'really', 'actually', 'basically', 'know',
    'mean', 'think', 'kind', 'sort', 'about', 'there', 'here', 'then', "i'm",
    'do', 'did', 'have', 'has', 'had', 'what', 'some',
}


def tokenize(text: str) -> List[str]:
    """Lower-cased word tokens of text, punctuation dropped."""
    if not text:
        return []
    return _TOKENIZER.tokenize(text.lower())


def normalize_text(text: str) -> str:
    return ' '.join(tokenize(text))


def contains_keyword(text: str, keyword: str) -> bool:
    """
    True when the keyword's tokens appear consecutively in the text.
    Matching is on token boundaries, so "cat" does not match "category".
    """
    kw = normalize_text(keyword)
    if not kw:
        return False
    return f' {kw} ' in f' {normalize_text(text)} '


def keyword_pattern(keyword: str) -> Optional[re.Pattern]:
    """Regex matching the keyword in raw transcript text, ignoring case and punctuation between words."""
    tokens = tokenize(keyword)
    if not tokens:
        return None
    body = r'[\W_]+'.join(re.escape(t) for t in tokens)
    return re.compile(rf'(?<![^\W_]){body}(?![^\W_])', re.IGNORECASE)


def strip_keyword_boundaries(transcript: str, start_keyword: str = '', end_keyword: str = '') -> str:
    """
    Keep only what was said between the keywords.

    Text up to and including the first start keyword is dropped, then
    everything from the first end keyword after that point. A keyword that
    is not found leaves that side untouched.
    """
    text = transcript or ''

    start_re = keyword_pattern(start_keyword)
    if start_re:
        m = start_re.search(text)
        if m:
            text = text[m.end():]

    end_re = keyword_pattern(end_keyword)
    if end_re:
        m = end_re.search(text)
        if m:
            text = text[:m.start()]

    # Leftover punctuation from the keyword utterances, e.g. ". Hello there,"
    return text.strip(' \t\n,.;:!?-')


def fallback_topic(text: str, max_words: int = 3) -> str:
    """First few non-filler words of the text, used when topic extraction fails."""
    words = [w for w in tokenize(text) if w not in FILLER_WORDS]
    topic = ' '.join(words[:max_words])
    return topic.capitalize()


def word_count(text: str) -> int:
    return len(tokenize(text))


def main():
    """Main entry point."""
    import argparse
    import json

    parser = argparse.ArgumentParser(
        description='Show what a transcript looks like after keyword stripping'
    )
    parser.add_argument(
        'input',
        nargs='?',
        help='Transcript text file (or read from stdin)'
    )
    parser.add_argument('--start', default='', help='Start keyword')
    parser.add_argument('--end', default='', help='End keyword')
    parser.add_argument(
        '--json',
        action='store_true',
        help='Output results as JSON'
    )

    args = parser.parse_args()

    if args.input:
        try:
            with open(args.input, 'r', encoding='utf-8') as f:
                transcript = f.read()
        except FileNotFoundError:
            print(f"ERROR: File '{args.input}' not found.", file=sys.stderr)
            sys.exit(1)
    else:
        transcript = sys.stdin.read()

    if not transcript.strip():
        print("ERROR: No transcript provided.", file=sys.stderr)
        sys.exit(1)

    stripped = strip_keyword_boundaries(transcript, args.start, args.end)
    result = {
        'start_found': contains_keyword(transcript, args.start),
        'end_found': contains_keyword(transcript, args.end),
        'text': stripped,
        'words': word_count(stripped),
        'topic': fallback_topic(stripped),
    }

    if args.json:
        print(json.dumps(result, indent=2, ensure_ascii=False))
        return

    print("=" * 70)
    print(f"Start keyword found: {result['start_found']}")
    print(f"End keyword found:   {result['end_found']}")
    print("-" * 70)
    print(result['text'] or "(nothing between the keywords)")
    print("-" * 70)
    print(f"Words: {result['words']}")
    print(f"Fallback topic: {result['topic'] or '(none)'}")
    print("=" * 70)


if __name__ == '__main__':
    main()
