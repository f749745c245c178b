import json
from datetime import timedelta

from bson import ObjectId

from conftest import auth_header, insert_product
from tasks import DELETE_S3_OBJECT, UPLOAD_MULTIPLE_S3_OBJECTS, UPLOAD_S3_OBJECT, EnqueueError, PayloadUploadImage

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32

LATTE_FORM = {
    "name": "Caffe Latte",
    "price": "4.50",
    "discount": "10",
    "summary": "Espresso with steamed milk",
    "description": "A smooth and creamy coffee with a thin layer of foam.",
    "category": "beverages",
    "ingredients": "Espresso, Milk, Flavored syrup",
}


def test_list_products(client, db):
    insert_product(db)
    insert_product(db, name="Croissant", category="snacks")

    res = client.get("/products")
    assert res.status_code == 200
    assert res.json()["results"] == 2

    res = client.get("/products", params={"category": "snacks"})
    assert [p["name"] for p in res.json()["data"]] == ["Croissant"]


def test_get_product(client, db):
    latte = insert_product(db)
    res = client.get(f"/products/beverages/{latte['_id']}")
    assert res.status_code == 200
    assert res.json()["data"]["id"] == str(latte["_id"])
    assert res.json()["data"]["name"] == "Caffe Latte"


def test_get_product_wrong_category_or_id(client, db):
    latte = insert_product(db)
    assert client.get(f"/products/snacks/{latte['_id']}").status_code == 404
    assert client.get(f"/products/beverages/{ObjectId()}").status_code == 404
    res = client.get("/products/beverages/12345")
    assert res.status_code == 400
    assert res.json() == {"status": "failed", "error": "Invalid product id"}


def test_create_product_with_images(client, db, admin, distributor):
    res = client.post(
        "/products",
        data=LATTE_FORM,
        files=[
            ("thumbnail", ("thumb.png", PNG, "image/png")),
            ("images", ("a.png", PNG, "image/png")),
            ("images", ("b.jpeg", PNG, "image/jpeg")),
        ],
        headers=auth_header(admin),
    )

    assert res.status_code == 201
    product = res.json()["data"]
    assert product["price"] == 4.5
    assert product["discount"] == 10
    assert product["ingredients"] == ["Espresso", "Milk", "Flavored syrup"]
    assert product["author"] == str(admin["_id"])
    assert product["thumbnail"].startswith("images/products/thumbnails/")
    assert product["thumbnail"].endswith(".png")
    assert len(product["images"]) == 2
    assert all(key.startswith("images/products/beverages/") for key in product["images"])

    [(_, payload, opts)] = distributor.of_type(UPLOAD_S3_OBJECT)
    upload = PayloadUploadImage.model_validate_json(payload)
    assert upload.object_key == product["thumbnail"]
    assert upload.data() == PNG
    assert opts.max_retry == 3
    assert opts.process_in == timedelta(seconds=2)
    assert opts.queue == "critical"

    [(_, payload, _)] = distributor.of_type(UPLOAD_MULTIPLE_S3_OBJECTS)
    assert [item["object_key"] for item in json.loads(payload)] == product["images"]
    assert db["product"].count_documents({}) == 1


def test_create_product_requires_admin(client, db, customer, distributor):
    res = client.post("/products", data=LATTE_FORM, headers=auth_header(customer))
    assert res.status_code == 403
    assert res.json()["status"] == "failed"
    assert db["product"].count_documents({}) == 0
    assert distributor.jobs == []


def test_create_product_rejects_non_image(client, db, admin, distributor):
    res = client.post(
        "/products",
        data=LATTE_FORM,
        files=[("thumbnail", ("notes.txt", b"hello", "text/plain"))],
        headers=auth_header(admin),
    )
    assert res.status_code == 400
    assert db["product"].count_documents({}) == 0
    assert distributor.jobs == []


def test_create_product_rejects_script_labelled_as_png(client, db, admin, distributor):
    res = client.post(
        "/products",
        data=LATTE_FORM,
        files=[("thumbnail", ("thumb.png", b"#!/bin/sh\nrm -rf /\n", "image/png"))],
        headers=auth_header(admin),
    )
    assert res.status_code == 400
    assert res.json()["error"] == "wrong file upload, only images required"
    assert db["product"].count_documents({}) == 0
    assert distributor.jobs == []


def test_create_product_unreachable_broker(client, db, admin, distributor):
    def refuse(*args, **kwargs):
        raise EnqueueError("enqueueing task error connection refused")

    distributor.enqueue = refuse
    res = client.post(
        "/products",
        data=LATTE_FORM,
        files=[("thumbnail", ("thumb.png", PNG, "image/png"))],
        headers=auth_header(admin),
    )
    assert res.status_code == 500
    assert res.json()["status"] == "failed"


def test_create_product_invalid_category(client, db, admin):
    res = client.post("/products", data={**LATTE_FORM, "category": "pastries"}, headers=auth_header(admin))
    assert res.status_code == 400
    assert db["product"].count_documents({}) == 0


def test_create_product_duplicate_name(client, db, admin):
    assert client.post("/products", data=LATTE_FORM, headers=auth_header(admin)).status_code == 201
    res = client.post("/products", data=LATTE_FORM, headers=auth_header(admin))
    assert res.status_code == 400
    assert res.json()["error"] == "document already exists"
    assert db["product"].count_documents({}) == 1


def test_update_product_replaces_thumbnail(client, db, admin, distributor):
    latte = insert_product(db, thumbnail="images/products/thumbnails/old.png")

    res = client.put(
        f"/products/{latte['_id']}",
        data={"price": "5.25", "ingredients": "Espresso,Oat milk"},
        files=[("thumbnail", ("new.png", PNG, "image/png"))],
        headers=auth_header(admin),
    )

    assert res.status_code == 200
    product = res.json()["data"]
    assert product["price"] == 5.25
    assert product["ingredients"] == ["Espresso", "Oat milk"]
    assert product["name"] == "Caffe Latte"
    assert product["thumbnail"] != "images/products/thumbnails/old.png"

    [(_, payload, opts)] = distributor.of_type(DELETE_S3_OBJECT)
    assert json.loads(payload) == ["images/products/thumbnails/old.png"]
    assert opts.process_in == timedelta(minutes=3)
    [(_, payload, _)] = distributor.of_type(UPLOAD_S3_OBJECT)
    assert PayloadUploadImage.model_validate_json(payload).object_key == product["thumbnail"]


def test_update_missing_product(client, admin):
    res = client.put(f"/products/{ObjectId()}", data={"price": "1"}, headers=auth_header(admin))
    assert res.status_code == 404


def test_delete_product_queues_object_removal(client, db, admin, distributor):
    latte = insert_product(db, thumbnail="thumbs/t.png", images=["imgs/a.png", "imgs/b.png"])

    res = client.delete(f"/products/{latte['_id']}", headers=auth_header(admin))

    assert res.status_code == 204
    assert db["product"].count_documents({}) == 0
    [(_, payload, opts)] = distributor.of_type(DELETE_S3_OBJECT)
    assert json.loads(payload) == ["imgs/a.png", "imgs/b.png", "thumbs/t.png"]
    assert opts.process_in == timedelta(minutes=1)
    assert opts.queue == "critical"


def test_delete_missing_product(client, admin):
    assert client.delete(f"/products/{ObjectId()}", headers=auth_header(admin)).status_code == 404


def test_non_admin_gets_forbidden_not_not_found(client, db, customer):
    latte = insert_product(db)
    headers = auth_header(customer)
    assert client.delete(f"/products/{ObjectId()}", headers=headers).status_code == 403
    assert client.delete(f"/products/{latte['_id']}", headers=headers).status_code == 403
    assert client.put(f"/products/{latte['_id']}", data={"price": "0"}, headers=headers).status_code == 403
    assert db["product"].count_documents({}) == 1
