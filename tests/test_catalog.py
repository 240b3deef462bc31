from bson import ObjectId


def make_product(client, headers, **overrides):
    body = {"name": "Argan Oil", "description": "Hair oil", "price": 12.5, "category": "hair", "stock": 10, **overrides}
    return client.post("/api/admin/products", json=body, headers=headers)


def make_service(client, headers, **overrides):
    body = {"name": "Massage", "description": "60 minute massage", "price": 40, "duration": 60, "category": "massage", **overrides}
    return client.post("/api/admin/services", json=body, headers=headers)


def test_product_crud(client, admin_headers):
    resp = make_product(client, admin_headers)
    assert resp.status_code == 201
    product = resp.json()
    url = f"/api/admin/products/{product['id']}"

    assert client.get("/api/products").json()[0]["name"] == "Argan Oil"
    assert client.get(f"/api/products/{product['id']}").json()["price"] == 12.5

    updated = client.put(url, json={"price": 15, "stock": 3}, headers=admin_headers).json()
    assert (updated["price"], updated["stock"]) == (15, 3)
    assert client.put(url, json={}, headers=admin_headers).status_code == 400

    toggled = client.patch(f"{url}/toggle-status", headers=admin_headers).json()
    assert toggled["is_active"] is False
    assert client.get("/api/products").json() == []
    assert client.get(f"/api/products/{product['id']}").status_code == 404
    assert len(client.get("/api/admin/products", headers=admin_headers).json()) == 1

    assert client.delete(url, headers=admin_headers).status_code == 200
    assert client.get(url, headers=admin_headers).status_code == 404
    assert client.delete(url, headers=admin_headers).status_code == 404


def test_catalog_writes_require_admin(client, user_headers):
    assert make_product(client, user_headers).status_code == 403
    assert make_service(client, user_headers).status_code == 403


def test_public_search_and_category(client, admin_headers):
    make_product(client, admin_headers)
    make_product(client, admin_headers, name="Comb", description="Wooden comb", category="tools")

    assert [p["name"] for p in client.get("/api/products", params={"search": "wooden"}).json()] == ["Comb"]
    assert [p["name"] for p in client.get("/api/products", params={"category": "hair"}).json()] == ["Argan Oil"]


def test_service_defaults_provider_to_creating_admin(client, admin, admin_headers):
    resp = make_service(client, admin_headers)
    assert resp.status_code == 201
    assert resp.json()["created_by"] == str(admin["_id"])


def test_service_validation(client, admin_headers):
    assert make_service(client, admin_headers, image="not a url").status_code == 400
    assert make_service(client, admin_headers, category="tattoo").status_code == 400
    assert make_service(client, admin_headers, duration=0).status_code == 400
    assert make_service(client, admin_headers, image="https://cdn.example.com/massage.png").status_code == 201


def test_unavailable_services_are_hidden(client, admin_headers):
    service = make_service(client, admin_headers).json()
    client.put(f"/api/admin/services/{service['id']}", json={"availability": False}, headers=admin_headers)
    assert client.get("/api/services").json() == []


def test_unknown_ids(client, admin_headers):
    assert client.get(f"/api/products/{ObjectId()}").status_code == 404
    assert client.get("/api/products/bad-id").status_code == 400
