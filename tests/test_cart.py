import pytest

from cart import add_item, get_cart, remove_item, set_note, update_quantity
from errors import InvalidOption, NotFound, ValidationError
from schemas import CartAddRequest, CartLineRequest, CartNoteRequest, CartUpdateRequest
from tests.factories import cart_of, make_product, make_user, put_in_cart


@pytest.fixture
def alice(db):
    return make_user(db, "alice")


@pytest.fixture
def product(db):
    return make_product(db, options=[
        {"option_name": "Small", "price": 10, "stock": 5},
        {"option_name": "Large", "price": 20, "sale_price": 15, "stock": 5},
    ])


def test_add_merges_same_option(db, alice, product):
    pid = str(product["_id"])
    add_item(db, alice, CartAddRequest(product_id=pid, option_index=1, quantity=2))
    cart = add_item(db, alice, CartAddRequest(product_id=pid, option_index=1))

    assert len(cart) == 1
    assert cart[0]["quantity"] == 3
    assert cart[0]["price"] == 15
    assert cart[0]["option_id"] == product["options"][1]["option_id"]


def test_add_by_option_id(db, alice, product):
    option_id = product["options"][0]["option_id"]
    cart = add_item(db, alice, CartAddRequest(product_id=str(product["_id"]), option_id=option_id))
    assert cart[0]["option_name"] == "Small"
    assert cart_of(db, alice)[0]["option_index"] == 0


def test_add_unknown_option(db, alice, product):
    with pytest.raises(InvalidOption):
        add_item(db, alice, CartAddRequest(product_id=str(product["_id"]), option_index=7))


def test_add_unknown_product(db, alice):
    with pytest.raises(NotFound):
        add_item(db, alice, CartAddRequest(product_id="64b000000000000000000000", option_index=0))


def test_add_needs_option_key(db, alice, product):
    with pytest.raises(ValidationError):
        add_item(db, alice, CartAddRequest(product_id=str(product["_id"])))


def test_update_quantity_and_remove_on_zero(db, alice, product):
    put_in_cart(db, alice, product, quantity=1)
    pid = str(product["_id"])

    cart = update_quantity(db, alice, CartUpdateRequest(product_id=pid, option_index=0, quantity=4))
    assert cart[0]["quantity"] == 4

    cart = update_quantity(db, alice, CartUpdateRequest(product_id=pid, option_index=0, quantity=0))
    assert cart == []


def test_update_missing_line(db, alice, product):
    with pytest.raises(NotFound):
        update_quantity(db, alice, CartUpdateRequest(product_id=str(product["_id"]), option_index=0, quantity=2))


def test_note_is_trimmed_and_bounded(db, alice, product):
    put_in_cart(db, alice, product)
    note = "  " + "x" * 600 + "  "
    cart = set_note(db, alice, CartNoteRequest(product_id=str(product["_id"]), option_index=0, item_note=note))
    assert cart[0]["item_note"] == "x" * 500


def test_remove_item(db, alice, product):
    put_in_cart(db, alice, product, position=0)
    put_in_cart(db, alice, product, position=1)
    cart = remove_item(db, alice, CartLineRequest(product_id=str(product["_id"]), option_index=0))
    assert [line["option_name"] for line in cart] == ["Large"]


def test_get_cart_prunes_stale_lines(db, alice, product):
    gone = make_product(db, "Gone")
    put_in_cart(db, alice, product, position=1)
    put_in_cart(db, alice, gone)
    db["product"].delete_one({"_id": gone["_id"]})

    cart = get_cart(db, alice)

    assert [line["product_name"] for line in cart] == ["Product A"]
    assert len(cart_of(db, alice)) == 1
