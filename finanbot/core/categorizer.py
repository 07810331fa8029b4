"""Keyword-based transaction categorization.

Categories are evaluated in a fixed priority order and the first category
with a keyword contained in the (lowercased, accent-folded) description wins.
Transfer keywords come first so that "PIX ... supermercado" lands in
Transferências instead of Alimentação.
"""
from __future__ import annotations

import unicodedata
from typing import Iterable, Protocol, Sequence, Tuple

TRANSFERS = "Transferências"
FOOD = "Alimentação"
TRANSPORT = "Transporte"
HEALTH = "Saúde"
ENTERTAINMENT = "Entretenimento"
HOUSING = "Habitação"
INCOME = "Receita"
EDUCATION = "Educação"
OTHER = "Outros"

CategoryRule = Tuple[str, Tuple[str, ...]]

DEFAULT_RULES: Tuple[CategoryRule, ...] = (
    (TRANSFERS, ("pix", "ted", "doc", "transferencia")),
    (
        FOOD,
        (
            "supermercado",
            "mercado",
            "alimentacao",
            "restaurante",
            "lanchonete",
            "padaria",
            "ifood",
            "uber eats",
            "delivery",
        ),
    ),
    (
        TRANSPORT,
        ("combustivel", "posto", "gasolina", "uber", "99", "onibus", "metro", "estacionamento"),
    ),
    (HEALTH, ("farmacia", "medic", "hospital", "clinica", "consulta", "exame")),
    (ENTERTAINMENT, ("netflix", "spotify", "cinema", "show", "teatro", "streaming")),
    (
        HOUSING,
        ("aluguel", "financiamento", "condominio", "iptu", "energia", "agua", "gas"),
    ),
    (INCOME, ("salario", "rendimento", "deposito", "pix recebido", "ted recebida")),
    (EDUCATION, ("escola", "universidade", "curso", "livro", "material escolar")),
)

CATEGORIES: Tuple[str, ...] = tuple(category for category, _ in DEFAULT_RULES) + (OTHER,)


class TransactionClassifier(Protocol):
    def classify(self, description: str) -> str:
        ...


def fold_text(text: str) -> str:
    """Lowercase and strip diacritics ("Farmácia" -> "farmacia")."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


class KeywordClassifier:
    """Ordered rule table; first matching category wins."""

    def __init__(self, rules: Iterable[CategoryRule] = DEFAULT_RULES, default: str = OTHER):
        self._rules: Sequence[CategoryRule] = tuple(
            (category, tuple(fold_text(keyword) for keyword in keywords)) for category, keywords in rules
        )
        self.default = default

    @property
    def categories(self) -> Tuple[str, ...]:
        return tuple(category for category, _ in self._rules) + (self.default,)

    def classify(self, description: str) -> str:
        text = fold_text(description or "").strip()
        if not text:
            return self.default
        for category, keywords in self._rules:
            if any(keyword in text for keyword in keywords):
                return category
        return self.default


default_classifier = KeywordClassifier()


def classify(description: str) -> str:
    return default_classifier.classify(description)
