"""Regex field parser for raw OCR text of Brazilian electricity invoices.

Used by the text-only engines (Google Vision, Tesseract). Values are returned
as the strings found on the page; number/date coercion happens when the
engine output is normalized.
"""

from __future__ import annotations

import re
import unicodedata

_NUM = r"(\d{1,3}(?:\.\d{3})+(?:,\d+)?|\d+(?:,\d+)?)"
_MONEY = r"(\d{1,3}(?:\.\d{3})*,\d{2}|\d+,\d{2})"
_DATE = r"(\d{2}/\d{2}/\d{4})"
_FLAGS = re.IGNORECASE

LABELED = 0.9
HEURISTIC = 0.7

# field -> (pattern, certainty). The first match wins.
FIELD_PATTERNS: dict[str, tuple[str, float]] = {
    "uc_code": (
        r"(?:\bUC\b|Unidade\s+Consumidora|C[óo]digo\s+(?:da\s+)?Instala[çc][ãa]o|N[ºo°]\s*(?:da\s+)?Instala[çc][ãa]o)"
        r"\s*[:\-]?\s*(\d[\d.\-/]{4,20}\d)",
        LABELED,
    ),
    "reference_month": (
        r"(?:M[êe]s\s+(?:de\s+)?Refer[êe]ncia|Refer[êe]ncia|\bRef\.?)\s*[:\-]?\s*([A-Za-z]{3}\s*[/\-]\s*\d{4}|\d{2}/\d{4})",
        LABELED,
    ),
    "energy_kwh": (r"(?:Consumo(?:\s+(?:Ativo|Faturado|Total|Medido))?|Energia\s+Ativa)[^\d\n]{0,30}?" + _NUM + r"\s*kWh", LABELED),
    "demanda_contratada_kw": (r"Demanda\s+Contratada[^\d\n]{0,20}?" + _NUM + r"\s*kW\b", LABELED),
    "demand_kw": (r"Demanda(?:\s+(?:Medida|Faturada|Ativa|Registrada))?[^\d\n]{0,30}?" + _NUM + r"\s*kW\b", HEURISTIC),
    "total_r$": (
        r"(?:Total\s+a\s+Pagar|Valor\s+Total|Total\s+da\s+Fatura|Valor\s+a\s+Pagar)\s*[:\-]?\s*(?:R\$)?\s*" + _MONEY,
        LABELED,
    ),
    "data_vencimento": (r"Vencimento\s*[:\-]?\s*" + _DATE, LABELED),
    "data_emissao": (r"(?:Data\s+de\s+)?Emiss[ãa]o\s*[:\-]?\s*" + _DATE, LABELED),
    "data_leitura": (r"Data\s+(?:da\s+)?Leitura(?:\s+Atual)?\s*[:\-]?\s*" + _DATE, LABELED),
    "leitura_atual": (r"Leitura\s+Atual\s*[:\-]?\s*" + _NUM + r"(?![\d/])", LABELED),
    "leitura_anterior": (r"Leitura\s+Anterior\s*[:\-]?\s*" + _NUM + r"(?![\d/])", LABELED),
    "multiplicador": (r"(?:Multiplicador|Constante(?:\s+de\s+Multiplica[çc][ãa]o)?)\s*[:\-]?\s*" + _NUM, LABELED),
    "dias_faturamento": (r"(?:Dias\s+de\s+Faturamento|N[ºo°]\s+de\s+Dias|Dias\s+Faturados)\s*[:\-]?\s*(\d{1,3})\b", LABELED),
    "icms_aliquota": (r"ICMS[^\n%]{0,20}?(\d{1,2}(?:,\d+)?)\s*%", LABELED),
    "icms_valor": (r"ICMS[^\n]{0,40}?R\$\s*" + _MONEY, LABELED),
    "pis_aliquota": (r"PIS(?:/PASEP)?[^\n%]{0,20}?(\d{1,2}(?:,\d+)?)\s*%", LABELED),
    "pis_valor": (r"PIS(?:/PASEP)?[^\n]{0,40}?R\$\s*" + _MONEY, LABELED),
    "cofins_aliquota": (r"COFINS[^\n%]{0,20}?(\d{1,2}(?:,\d+)?)\s*%", LABELED),
    "cofins_valor": (r"COFINS[^\n]{0,40}?R\$\s*" + _MONEY, LABELED),
    "contrib_ilum_publica": (
        r"(?:Contrib(?:ui[çc][ãa]o)?\.?\s*(?:de\s+)?Ilum(?:ina[çc][ãa]o)?\.?\s*P[úu]blica|\bCIP\b|\bCOSIP\b)[^\n]{0,20}?(?:R\$)?\s*"
        + _MONEY,
        LABELED,
    ),
    "bandeira_valor": (r"(?:Adicional\s+(?:de\s+)?)?Bandeira[^\n]{0,40}?R\$\s*" + _MONEY, HEURISTIC),
    "valor_multa": (r"Multa[^\n]{0,30}?(?:R\$)?\s*" + _MONEY, LABELED),
    "valor_juros": (r"Juros[^\n]{0,30}?(?:R\$)?\s*" + _MONEY, LABELED),
    "valor_tusd": (r"(?:Uso\s+do\s+Sistema|TUSD)[^\n]{0,40}?R\$\s*" + _MONEY, HEURISTIC),
    "valor_te": (r"(?:Energia\s+El[ée]trica|\bTE\b)[^\n]{0,40}?R\$\s*" + _MONEY, HEURISTIC),
    "energia_injetada_kwh": (r"(?:Energia\s+)?Injetada[^\d\n]{0,30}?" + _NUM + r"\s*kWh", LABELED),
    "energia_compensada_kwh": (r"(?:Energia\s+)?Compensada[^\d\n]{0,30}?" + _NUM + r"\s*kWh", LABELED),
    "saldo_creditos_kwh": (r"Saldo[^\d\n]{0,30}?" + _NUM + r"\s*kWh", HEURISTIC),
    "energia_reativa_kvarh": (r"(?:Energia\s+)?Reativa[^\d\n]{0,30}?" + _NUM + r"\s*kvarh", LABELED),
    "fator_potencia": (r"Fator\s+de\s+Pot[êe]ncia\s*[:\-]?\s*(\d?[,.]\d+)", LABELED),
    "subgrupo_tensao": (r"\b(?:Subgrupo|Grupo)\s*[:\-]?\s*(A[1-4]a?|AS|B[1-4])\b", LABELED),
    "modalidade_tarifaria": (r"Modalidade(?:\s+Tarif[áa]ria)?\s*[:\-]?\s*(Convencional|Verde|Azul|Branca)", LABELED),
    "classe_subclasse": (
        r"Classe\s*[:\-]?\s*((?:Residencial|Comercial|Industrial|Rural|Poder\s+P[úu]blico|Servi[çc]o\s+P[úu]blico)[^\n]{0,30})",
        HEURISTIC,
    ),
    "cnpj_distribuidora": (r"CNPJ\s*[:\-]?\s*(\d{2}\.?\d{3}\.?\d{3}/?\d{4}-?\d{2})", LABELED),
    "numero_fatura": (r"(?:N[ºo°]\s*(?:da\s+)?(?:Fatura|Nota\s+Fiscal)|Nota\s+Fiscal\s+N[ºo°]?)\s*[:\-]?\s*([\w\-.]{3,30})", LABELED),
}

_BANDEIRA = re.compile(
    r"Bandeira\s*(?:Tarif[áa]ria)?\s*[:\-]?\s*(Verde|Amarela|Vermelha(?:\s*[-–]?\s*(?:Patamar\s*|P)([12]))?|Escassez\s+H[íi]drica)",
    _FLAGS,
)

DISTRIBUTORS = (
    "CEMIG",
    "ENEL",
    "LIGHT",
    "COPEL",
    "CPFL",
    "CELESC",
    "COELBA",
    "EQUATORIAL",
    "ENERGISA",
    "NEOENERGIA",
    "EDP",
    "ELEKTRO",
    "RGE",
    "CEEE",
)

_COMPILED = {name: (re.compile(pattern, _FLAGS), certainty) for name, (pattern, certainty) in FIELD_PATTERNS.items()}


def _strip_accents(text: str) -> str:
    return "".join(c for c in unicodedata.normalize("NFD", text) if unicodedata.category(c) != "Mn")


def normalize_bandeira(label: str, patamar: str | None = None) -> str:
    plain = _strip_accents(label).lower()
    if plain.startswith("verde"):
        return "Verde"
    if plain.startswith("amarela"):
        return "Amarela"
    if plain.startswith("escassez"):
        return "Escassez Hídrica"
    if plain.startswith("vermelha"):
        return f"Vermelha Patamar {patamar or '1'}"
    return label.strip()


def parse_invoice_text(text: str) -> dict[str, tuple[str, float]]:
    """Return ``{field: (raw value, certainty)}`` for every field recognised in *text*."""
    found: dict[str, tuple[str, float]] = {}
    if not text:
        return found

    for name, (pattern, certainty) in _COMPILED.items():
        match = pattern.search(text)
        if match:
            found[name] = (match.group(1).strip(), certainty)

    match = _BANDEIRA.search(text)
    if match:
        found["bandeira_tipo"] = (normalize_bandeira(match.group(1), match.group(2)), LABELED)

    upper = text.upper()
    for distributor in DISTRIBUTORS:
        if re.search(rf"\b{distributor}\b", upper):
            found["distribuidora"] = (distributor, HEURISTIC)
            break

    return found
