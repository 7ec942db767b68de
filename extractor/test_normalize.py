import pytest

from extractor.normalize import PASS_ORDER, fold, line_key

CANONICAL = "“VIGILARÁN” A JUECES SUS COLEGAS DE LA 4T"
# UTF-8 text decoded as windows-1252 and re-encoded: the double-encoding seen in the PDFs
MOJIBAKE = "â€œVIGILARÃ\u0081Nâ€\u009d A JUECES SUS COLEGAS DE LA 4T"


def test_pass_order_starts_with_encoding_repair():
    assert PASS_ORDER[0] == "repair_encoding"
    assert PASS_ORDER[-1] == "collapse_whitespace"
    assert PASS_ORDER.index("strip_banners") < PASS_ORDER.index("strip_page_markers")


def test_fold_ignores_case_accents_and_quotes():
    assert fold("“Vigilarán” a jueces") == fold('"VIGILARAN" A JUECES')
    assert fold("  Excélsior   ") == "EXCELSIOR"


def test_line_key_drops_page_markers():
    assert line_key("OCHO COLUMNAS [PAGE 2]") == "OCHO COLUMNAS"
    assert line_key("Página 3 de 80  Ocho Columnas") == "OCHO COLUMNAS"


def test_repair_encoding(normalizer):
    assert normalizer.repair_encoding(MOJIBAKE) == CANONICAL


def test_repair_encoding_prefers_longest_sequence(normalizer):
    # "â€" alone is the fallback for a closing quote whose last byte was lost
    assert normalizer.repair_encoding("DICE â€œHOLAâ€") == "DICE “HOLA”"


def test_strip_banners(normalizer):
    text = "OCHO COLUMNAS\nTITULAR DE PRUEBA\nSÍNTESIS INFORMATIVA [PAGE 4]\ncuerpo"
    assert normalizer.strip_banners(text) == "TITULAR DE PRUEBA\ncuerpo"


def test_strip_date_lines(normalizer):
    text = "Jueves 5 de junio de 2025\ncuerpo del texto"
    assert normalizer.strip_date_lines(text).strip() == "cuerpo del texto"
    assert "2025" not in normalizer.strip_date_lines("miércoles, 4 de junio del 2025")


def test_strip_page_footers_and_markers(normalizer):
    assert normalizer.strip_page_footers("texto\n  Página 12 de 80 ").strip() == "texto"
    assert normalizer.strip_page_markers("[PAGE 7] texto\n----------").strip() == "texto"


def test_dates_and_page_references_inside_sentences_are_kept(normalizer):
    body = "El lunes 2 de junio de 2025 la Corte resolvió, según la página 4 del fallo."
    assert normalizer.normalize(body) == body
    assert normalizer.normalize(f"Lunes 2 de junio de 2025\n{body}\nPágina 4") == body


def test_collapse_whitespace(normalizer):
    text = "uno   dos \r\n\r\n\r\n\r\ntres\t cuatro  \n"
    assert normalizer.collapse_whitespace(text) == "uno dos\n\ntres cuatro"


def test_normalize_full_pipeline(normalizer):
    raw = (
        "OCHO COLUMNAS\n"
        "Jueves 5 de junio de 2025\n"
        f"{MOJIBAKE}\n"
        "Los   magistrados serán evaluados.\n"
        "\n\n\n"
        "Página 2 de 80\n"
        "[PAGE 2]\n"
    )
    assert normalizer.normalize(raw) == f"{CANONICAL}\nLos magistrados serán evaluados."


@pytest.mark.parametrize("raw", [
    MOJIBAKE,
    "OCHO COLUMNAS [PAGE 3]\n  texto   con   espacios \n\n\n\nmás",
    "Jueves 5 de junio de 2025 OCHO COLUMNAS\nfin",
    "",
])
def test_normalize_is_idempotent(normalizer, raw):
    once = normalizer.normalize(raw)
    assert normalizer.normalize(once) == once


def test_normalize_never_raises(normalizer):
    assert normalizer.normalize(None) == ""
    assert normalizer.normalize(b"\xff\xfe invalid utf-8") != ""
    assert normalizer.normalize(12345) == "12345"


def test_bytes_are_repaired_before_decoding(normalizer):
    raw = MOJIBAKE.encode("utf-8")
    assert normalizer.normalize(raw) == CANONICAL
    assert normalizer.match_known_title(normalizer.normalize(raw)) == CANONICAL


def test_match_known_title_with_straight_quotes(normalizer):
    assert normalizer.match_known_title('"VIGILARAN" A JUECES SUS COLEGAS DE LA 4T') == CANONICAL


def test_match_known_title_substring(normalizer):
    assert (normalizer.match_known_title("NUEVOS SIGNOS DEL FRENÓN")
            == "NUEVOS SIGNOS DEL FRENÓN ECONÓMICO")


def test_match_known_title_fuzzy(normalizer):
    assert (normalizer.match_known_title("DONALD TRUMP CIERA PUERTAS A 19 PAISES")
            == "DONALD TRUMP CIERRA PUERTAS A 19 PAÍSES")


def test_match_known_title_unknown_is_unchanged(normalizer):
    title = "LLUVIAS AFECTAN CARRETERAS DEL SURESTE"
    assert normalizer.match_known_title(title) == title
    assert normalizer.match_known_title("") == ""
    assert normalizer.match_known_title(None) is None


def test_match_known_title_is_idempotent(normalizer):
    once = normalizer.match_known_title("ofrece mexico acuerdo de seguridad")
    assert once == "OFRECE MÉXICO ACUERDO DE SEGURIDAD"
    assert normalizer.match_known_title(once) == once
