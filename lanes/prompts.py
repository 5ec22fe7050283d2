# -*- coding: utf-8 -*-
"""
Prompt file parsing for chains.

Supported layouts, tried in this order:
    Prompt 1 (new): ...       Prompt 2 (continue): ...
    #1. ...                   #2. ...
    prompt 1: ...             prompt 2: ...
    ... ---------- ...        (separator of ten or more dashes)

A step is NEW when its header type or its text says "(new)"; everything
else continues from the previous clip.
"""

import re
from dataclasses import dataclass
from typing import List

from config import JobKind

TYPED_HEADER = re.compile(r"Prompt\s*\d+\s*\(([^)]+)\)\s*:", re.IGNORECASE)
HASH_HEADER = re.compile(r"#\d+\.")
PLAIN_HEADER = re.compile(r"prompt\s*\d+\s*:", re.IGNORECASE)
SEPARATOR = re.compile(r"-{10,}")
TYPE_MARKER = re.compile(r"\((new|continue)\)", re.IGNORECASE)


@dataclass(frozen=True)
class ChainStep:
    prompt: str
    kind: JobKind = JobKind.CONTINUE


def step_from_text(text: str, declared_type: str = "") -> ChainStep:
    is_new = declared_type.strip().lower() == "new" or "(new)" in text.lower()
    prompt = TYPE_MARKER.sub("", text).strip()
    return ChainStep(prompt=prompt, kind=JobKind.NEW if is_new else JobKind.CONTINUE)


def parse_prompt_file(text: str) -> List[ChainStep]:
    text = text.lstrip("﻿")

    if TYPED_HEADER.search(text):
        # re.split with one group yields [before, type1, body1, type2, body2, ...]
        parts = TYPED_HEADER.split(text)
        steps = [step_from_text(body, declared) for declared, body in zip(parts[1::2], parts[2::2])]
    elif HASH_HEADER.search(text):
        steps = [step_from_text(body) for body in HASH_HEADER.split(text)[1:]]
    elif PLAIN_HEADER.search(text):
        steps = [step_from_text(body) for body in PLAIN_HEADER.split(text)[1:]]
    else:
        steps = [step_from_text(body) for body in SEPARATOR.split(text)]

    return [step for step in steps if step.prompt]
