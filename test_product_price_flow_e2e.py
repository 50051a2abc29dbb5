# test_product_price_flow_e2e.py
from datetime import datetime, timezone
import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

def jprint(step, r):
    """Helper to print response and assert on failure."""
    assert 200 <= r.status_code < 300, f"{step} -> {r.status_code}: {r.text}"
    return r.json() if r.headers.get("content-type","").startswith("application/json") else r.text

def _buy(client, base_url, headers, material, quantity, unit, price_per_unit):
    r = client.post(f"{base_url}/purchases/", headers=headers, json={
        "material": material, "quantity": quantity, "unit": unit, "price_per_unit": price_per_unit,
    })
    return jprint(f"POST /purchases ({material})", r)

def _stock(client, base_url, headers, material):
    r = client.get(f"{base_url}/materials/{material}/latest", headers=headers)
    return jprint(f"GET latest ({material})", r)["latest"]["stock"]

@pytest.fixture
def stocked(client, base_url, auth_headers, rng_suffix):
    """Two materials: A at 100/kg in kg, B at 0.5/g (500/kg) in grams."""
    a, b = f"Amla-{rng_suffix}", f"Brahmi-{rng_suffix}"
    pa = _buy(client, base_url, auth_headers, a, 10, "kg", 100)
    _buy(client, base_url, auth_headers, b, 2000, "g", 0.5)
    return a, b, pa["id"]

def test_quote_and_save_with_deduction(client, base_url, auth_headers, stocked):
    a, b, a_pid = stocked
    lines = [{"material": a, "quantity": 2, "unit": "kg"}, {"material": b, "quantity": 500, "unit": "g"}]

    # ===== 1. Quote =====
    r = client.post(f"{base_url}/products/quote", headers=auth_headers, json={
        "lines": lines, "num_bottles": 10, "cost_per_bottle": 5,
    })
    q = jprint("POST /products/quote", r)
    calc = q["calculations"]
    assert calc["materials_cost"] == pytest.approx(450)
    assert calc["bottle_cost"] == pytest.approx(50)
    assert calc["base_cost"] == pytest.approx(500)
    assert calc["margin1"] == pytest.approx(65)
    assert calc["margin2"] == pytest.approx(67.8)
    assert calc["total_selling_price"] == pytest.approx(632.8)
    assert calc["gross_per_bottle"] == pytest.approx(63.28)
    assert q["shortages"] == []
    # a quote writes nothing
    assert _stock(client, base_url, auth_headers, a) == 10

    # ===== 2. Save and consume =====
    r = client.post(f"{base_url}/products/", headers=auth_headers, json={
        "name": "Hair Oil 100ml", "lines": lines, "num_bottles": 10, "cost_per_bottle": 5,
    })
    pp = jprint("POST /products", r)
    assert pp["stock_deducted"] is True
    assert pp["calculations"]["gross_per_bottle"] == pytest.approx(63.28)
    assert pp["rates"] == {"margin1": pytest.approx(0.13), "margin2": pytest.approx(0.12)}
    assert pp["bottle_info"] == {"num_bottles": 10, "cost_per_bottle": 5}
    used = pp["materials_used"]
    assert [u["material_name"] for u in used] == [a, b]
    assert used[0]["material_id"] == a_pid
    assert used[1]["cost_per_unit"] == pytest.approx(0.5)
    assert used[1]["total_cost"] == pytest.approx(250)

    assert _stock(client, base_url, auth_headers, a) == 8
    assert _stock(client, base_url, auth_headers, b) == 1500

    # ===== 3. Read back =====
    r = client.get(f"{base_url}/products/{pp['id']}", headers=auth_headers)
    assert jprint("GET /products/{id}", r)["calculations"] == pp["calculations"]

    today = datetime.now(timezone.utc).date().isoformat()
    r = client.get(f"{base_url}/products/", headers=auth_headers, params={"name": "Hair Oil 100ml", "day": today})
    assert [p["id"] for p in jprint("GET /products?name&day", r)] == [pp["id"]]
    r = client.get(f"{base_url}/products/", headers=auth_headers, params={"day": "2000-01-01"})
    assert jprint("GET /products?day=2000", r) == []

    # ===== 4. Delete keeps consumed stock consumed =====
    r = client.delete(f"{base_url}/products/{pp['id']}", headers=auth_headers)
    jprint("DELETE /products/{id}", r)
    r = client.get(f"{base_url}/products/{pp['id']}", headers=auth_headers)
    assert r.status_code == 404
    assert _stock(client, base_url, auth_headers, a) == 8

def test_shortage_aborts_everything(client, base_url, auth_headers, stocked):
    a, b, _ = stocked
    body = {
        "name": "Face Pack", "num_bottles": 4, "cost_per_bottle": 2,
        "lines": [{"material": a, "quantity": 1, "unit": "kg"}, {"material": b, "quantity": 5, "unit": "kg"}],
    }

    r = client.post(f"{base_url}/products/quote", headers=auth_headers, json=body)
    q = jprint("POST /products/quote (short)", r)
    assert [s["material"] for s in q["shortages"]] == [b]

    r = client.post(f"{base_url}/products/", headers=auth_headers, json=body)
    assert r.status_code == 409, r.text
    short = r.json()["shortages"]
    assert len(short) == 1
    assert short[0]["material"] == b
    assert short[0]["shortfall"] == pytest.approx(3000)
    assert short[0]["unit"] == "g"

    # A was fine on its own but must not have moved
    assert _stock(client, base_url, auth_headers, a) == 10
    assert _stock(client, base_url, auth_headers, b) == 2000
    r = client.get(f"{base_url}/products/", headers=auth_headers, params={"name": "Face Pack"})
    assert jprint("GET /products?name", r) == []

def test_repeated_material_lines_are_summed(client, base_url, auth_headers, stocked):
    a, _, _ = stocked
    r = client.post(f"{base_url}/products/", headers=auth_headers, json={
        "name": "Double", "num_bottles": 1,
        "lines": [{"material": a, "quantity": 6, "unit": "kg"}, {"material": a, "quantity": 6000, "unit": "g"}],
    })
    assert r.status_code == 409, r.text
    assert _stock(client, base_url, auth_headers, a) == 10

def test_save_without_deduction(client, base_url, auth_headers, stocked):
    a, b, _ = stocked
    r = client.post(f"{base_url}/products/", headers=auth_headers, json={
        "name": "Sample", "num_bottles": 2, "deduct_stock": False,
        "lines": [{"material": b, "quantity": 0.5, "unit": "kg"}],
    })
    pp = jprint("POST /products (no deduction)", r)
    assert pp["stock_deducted"] is False
    # 0.5 kg of B costed at 500/kg
    assert pp["materials_used"][0]["cost_per_unit"] == pytest.approx(500)
    assert pp["calculations"]["materials_cost"] == pytest.approx(250)
    assert _stock(client, base_url, auth_headers, b) == 2000

def test_invalid_product_requests(client, base_url, auth_headers, stocked):
    a, _, _ = stocked
    line = [{"material": a, "quantity": 1, "unit": "kg"}]

    r = client.post(f"{base_url}/products/quote", headers=auth_headers, json={"lines": line, "num_bottles": 0})
    assert r.status_code == 422, r.text

    r = client.post(f"{base_url}/products/", headers=auth_headers, json={"name": "Zero", "lines": line, "num_bottles": 0})
    assert r.status_code == 422, r.text
    assert _stock(client, base_url, auth_headers, a) == 10

    r = client.post(f"{base_url}/products/quote", headers=auth_headers, json={
        "lines": [{"material": "never-bought", "quantity": 1, "unit": "kg"}], "num_bottles": 1,
    })
    assert r.status_code == 422, r.text

    r = client.post(f"{base_url}/products/quote", headers=auth_headers, json={"lines": [], "num_bottles": 1})
    assert r.status_code == 422, r.text

    r = client.post(f"{base_url}/products/quote", headers=auth_headers, json={
        "lines": [{"material": a, "quantity": -1, "unit": "kg"}], "num_bottles": 1,
    })
    assert r.status_code == 422, r.text

def test_consumed_purchase_is_protected(client, base_url, auth_headers, stocked):
    a, _, a_pid = stocked
    r = client.post(f"{base_url}/products/", headers=auth_headers, json={
        "name": "Balm", "num_bottles": 5, "lines": [{"material": a, "quantity": 4, "unit": "kg"}],
    })
    jprint("POST /products", r)
    assert _stock(client, base_url, auth_headers, a) == 6

    r = client.delete(f"{base_url}/purchases/{a_pid}", headers=auth_headers)
    assert r.status_code == 409, r.text

    # raising the lot keeps the 4 kg already used
    r = client.patch(f"{base_url}/purchases/{a_pid}", headers=auth_headers, json={"quantity": 12})
    assert jprint("PATCH quantity up", r)["stock"] == 8

    r = client.patch(f"{base_url}/purchases/{a_pid}", headers=auth_headers, json={"quantity": 3})
    assert r.status_code == 409, r.text
    assert _stock(client, base_url, auth_headers, a) == 8

def test_delete_store_failure_is_retryable(client, base_url, auth_headers, stocked, monkeypatch):
    a, _, _ = stocked
    r = client.post(f"{base_url}/products/", headers=auth_headers, json={
        "name": "Serum", "num_bottles": 1, "deduct_stock": False,
        "lines": [{"material": a, "quantity": 1, "unit": "kg"}],
    })
    pp = jprint("POST /products", r)

    def failing_commit(self):
        raise OperationalError("COMMIT", None, Exception("database is locked"))
    monkeypatch.setattr(Session, "commit", failing_commit)
    r = client.delete(f"{base_url}/products/{pp['id']}", headers=auth_headers)
    assert r.status_code == 503, r.text
    assert r.json()["retryable"] is True

    monkeypatch.undo()
    r = client.get(f"{base_url}/products/{pp['id']}", headers=auth_headers)
    assert jprint("GET /products/{id} after failed delete", r)["name"] == "Serum"

    r = client.delete(f"{base_url}/products/{pp['id']}", headers=auth_headers)
    jprint("DELETE /products/{id}", r)
    r = client.delete(f"{base_url}/products/{pp['id']}", headers=auth_headers)
    assert r.status_code == 404
