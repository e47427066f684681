from datetime import datetime

from vep_scheduler.models import Job, Recipient
from vep_scheduler.renderer import TRAILERS, month_name, render, template_variables

NOW = datetime(2026, 12, 5, 10, 0)


def make_recipient(**overrides):
    data = {"id": 1, "real_name": "ANA PEREZ", "alter_name": "Ana", "mobile_number": "5491100000001"}
    data.update(overrides)
    return Recipient(**data)


def make_job(**overrides):
    data = {"id": 7, "type": "monotributo", "caducate": "31/12"}
    data.update(overrides)
    return Job(**data)


def test_render_substitutes_name_and_expiry():
    text = render("Hola {nombre}, vence {caducate}", make_recipient(), make_job(), NOW)
    assert text == "Hola Ana, vence 31/12"


def test_render_appends_papers_trailer():
    text = render("Hola {nombre}, vence {caducate}", make_recipient(need_papers=True), make_job(), NOW)
    assert text == "Hola Ana, vence 31/12" + TRAILERS[0][1]


def test_trailers_follow_fixed_order():
    recipient = make_recipient(need_papers=True, need_z=True, need_compra=True, need_auditoria=True)
    text = render("Hola {nombre}.", recipient, make_job(), NOW)
    assert text == "Hola Ana." + "".join(trailer for _, trailer in TRAILERS)


def test_greeting_prepended_when_template_has_no_name():
    text = render("te paso el vep.", make_recipient(alter_name=None), make_job(), NOW)
    assert text == "Hola ANA PEREZ, te paso el vep."


def test_escaped_newlines_and_unknown_tokens():
    text = render("Hola {alter_name}\\nsaludos {desconocido}", make_recipient(), make_job(), NOW)
    assert text == "Hola Ana\nsaludos {desconocido}"


def test_month_tokens_roll_over_the_year():
    variables = template_variables(make_recipient(), make_job(caducate=None), NOW)
    assert variables["{mes}"] == "diciembre"
    assert variables["{año}"] == "2026"
    assert variables["{mes_siguiente}"] == "enero 2027"
    assert variables["{caducate}"] == "enero"
    assert variables["{tipo}"] == "monotributo"


def test_missing_values_render_empty():
    recipient = make_recipient(real_name="", alter_name=None)
    text = render("Hola {nombre} {real_name}!", recipient, make_job(), NOW)
    assert text == "Hola  !"


def test_month_name_wraps():
    assert month_name(1) == "enero"
    assert month_name(12) == "diciembre"
