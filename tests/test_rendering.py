from __future__ import annotations


def test_render_body_fills_known_placeholders_only():
    from app.outbox.rendering import render_body

    out = render_body("Oi {primeiro_nome}, seu pedido {pedido} saiu. {desconhecido}", {"primeiro_nome": "Ana", "pedido": 42})
    assert out == "Oi Ana, seu pedido 42 saiu. {desconhecido}"


def test_contact_variables_include_extra_fields():
    from app.models.tables import Contact
    from app.outbox.rendering import contact_variables

    c = Contact(id="c1", tenant_id="t1", number="5511987654321", name="Maria Silva", email="m@x.io", extra={"plano": "gold"})
    v = contact_variables(c)
    assert v["first_name"] == "Maria"
    assert v["primeiro_nome"] == "Maria"
    assert v["numero"] == "5511987654321"
    assert v["plano"] == "gold"


def test_media_kind_for_paths_and_urls():
    from app.outbox.rendering import media_kind_for

    assert media_kind_for("/tmp/foto.JPG") == "image"
    assert media_kind_for("https://cdn.example.com/v/clip.mp4?sig=1") == "video"
    assert media_kind_for("audio.opus") == "audio"
    assert media_kind_for("contrato.pdf") == "document"


def test_template_components_body_header_and_buttons():
    from app.outbox.rendering import build_template_components

    definition = [
        {"type": "HEADER", "format": "IMAGE"},
        {"type": "BODY", "text": "Oi {{1}}, use {{2}}"},
        {"type": "BUTTONS", "buttons": [{"type": "URL", "text": "Ver"}, {"type": "COPY_CODE", "text": "Copiar"}]},
    ]
    variables = {
        "header": {"1": {"value": "https://cdn.example.com/banner.png"}},
        "body": {"2": {"value": "PROMO10"}, "1": {"value": "{primeiro_nome}"}},
        "buttons": {
            "url": {"value": "pedido/{pedido}", "buttonIndex": 0},
            "code": {"value": "PROMO10", "buttonIndex": 1},
        },
    }

    out = build_template_components(definition, variables, context={"primeiro_nome": "Ana", "pedido": "77"})

    assert out[0] == {"type": "header", "parameters": [{"type": "image", "image": {"link": "https://cdn.example.com/banner.png"}}]}
    assert out[1] == {"type": "body", "parameters": [{"type": "text", "text": "Ana"}, {"type": "text", "text": "PROMO10"}]}
    assert out[2] == {"type": "button", "sub_type": "url", "index": "0", "parameters": [{"type": "text", "text": "pedido/77"}]}
    assert out[3] == {
        "type": "button",
        "sub_type": "copy_code",
        "index": "1",
        "parameters": [{"type": "coupon_code", "coupon_code": "PROMO10"}],
    }


def test_template_components_already_send_ready():
    from app.outbox.rendering import build_template_components

    ready = [{"type": "body", "parameters": [{"type": "text", "text": "x"}]}]
    assert build_template_components(ready, {}) is ready
    assert build_template_components([{"type": "BODY", "text": "static"}], {}) == []
