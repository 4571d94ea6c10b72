import pytest

import catalog
from catalog import StockContention, decrement_stock, locate_option, unit_price
from tests.factories import auth_header, make_category, make_product, make_user, stock_of


def test_locate_option_prefers_id():
    product = {"options": [{"option_id": "a", "option_name": "A"}, {"option_id": "b", "option_name": "B"}]}
    assert locate_option(product, "b", 0) == (1, product["options"][1])
    assert locate_option(product, "zzz", 0) == (None, None)
    assert locate_option(product, None, 0) == (0, product["options"][0])
    assert locate_option(product, None, 2) == (None, None)
    assert locate_option(product, None, -1) == (None, None)
    assert locate_option(product, None, None) == (None, None)


def test_unit_price():
    assert unit_price({"price": 20}) == 20
    assert unit_price({"price": 20, "sale_price": None}) == 20
    assert unit_price({"price": 20, "sale_price": 15}) == 15
    assert unit_price({"price": 20, "sale_price": 0}) == 0


def test_decrement_stock(db):
    product = make_product(db, options=[{"option_name": "x", "price": 1, "stock": 5}])
    option_id = product["options"][0]["option_id"]

    assert decrement_stock(db, product["_id"], option_id, 0, 2) == 3
    assert decrement_stock(db, product["_id"], option_id, 0, 10) == 0
    assert stock_of(db, product) == 0
    assert decrement_stock(db, product["_id"], option_id, 0, 1) == 0


def test_decrement_legacy_option_without_id(db):
    product = make_product(db)
    db["product"].update_one({"_id": product["_id"]}, {"$unset": {"options.0.option_id": ""}})

    assert decrement_stock(db, product["_id"], None, 0, 2) == 3


def test_decrement_gives_up_under_contention(db, monkeypatch):
    product = make_product(db)
    real = catalog.find_product

    def stale(database, product_id):
        doc = real(database, product_id)
        doc["options"][0]["stock"] = 4
        return doc

    monkeypatch.setattr(catalog, "find_product", stale)
    with pytest.raises(StockContention):
        decrement_stock(db, product["_id"], product["options"][0]["option_id"], 0, 1)
    monkeypatch.undo()
    assert stock_of(db, product) == 5


def test_decrement_missing(db):
    product = make_product(db)
    assert decrement_stock(db, product["_id"], "nope", 0, 1) is None
    assert decrement_stock(db, "64b000000000000000000000", None, 0, 1) is None
    assert stock_of(db, product) == 5


# -------------------------------
# HTTP
# -------------------------------

def test_public_listing(client, db):
    make_product(db, "A")
    b = make_product(db, "B")
    db["product"].update_one({"_id": b["_id"]}, {"$set": {"is_top": True}})

    assert {p["name"] for p in client.get("/api/products").json()} == {"A", "B"}
    assert [p["name"] for p in client.get("/api/products", params={"top": True}).json()] == ["B"]
    assert client.get(f"/api/products/{b['_id']}").json()["name"] == "B"
    assert client.get("/api/products/64b000000000000000000000").status_code == 404
    assert client.get("/api/products/bad-id").json()["code"] == "validation_error"


def test_admin_product_crud(client, db):
    admin = make_user(db, "root", role="admin")
    headers = auth_header(db, admin)
    category_id = make_category(db)

    res = client.post("/api/admin/products", headers=headers, json={
        "name": "Box",
        "description": "A box",
        "category_id": category_id,
        "image": "https://img/box.jpg",
        "options": [{"option_name": "S", "price": 10, "stock": 3}, {"option_name": "L", "price": 20, "stock": 1}],
    })
    assert res.status_code == 201
    created = res.json()
    small, large = created["options"]
    assert small["option_id"] and large["option_id"] and small["option_id"] != large["option_id"]

    # reorder and add an option; existing ids survive
    res = client.patch(f"/api/admin/products/{created['id']}", headers=headers, json={
        "options": [large, small, {"option_name": "XL", "price": 30, "stock": 0}],
    })
    options = res.json()["options"]
    assert [o["option_id"] for o in options[:2]] == [large["option_id"], small["option_id"]]
    assert options[2]["option_id"]

    assert client.delete(f"/api/admin/products/{created['id']}", headers=headers).json() == {"message": "Deleted"}
    assert client.delete(f"/api/admin/products/{created['id']}", headers=headers).status_code == 404


def test_admin_routes_need_admin(client, db):
    customer = make_user(db, "alice")
    res = client.post("/api/admin/categories", headers=auth_header(db, customer), json={"name": "x"})
    assert res.status_code == 403
    assert client.post("/api/admin/categories", json={"name": "x"}).status_code == 401


def test_admin_category_crud(client, db):
    headers = auth_header(db, make_user(db, "root", role="admin"))
    created = client.post("/api/admin/categories", headers=headers, json={"name": "Boxes"}).json()
    renamed = client.patch(f"/api/admin/categories/{created['id']}", headers=headers, json={"name": "Crates"}).json()
    assert renamed["name"] == "Crates"
    assert [c["name"] for c in client.get("/api/categories").json()] == ["Crates"]
    assert client.delete(f"/api/admin/categories/{created['id']}", headers=headers).status_code == 200
