from conftest import auth, register


def send(client, token, receiver_id, content):
    return client.post("/api/messages", json={"receiver_id": receiver_id, "content": content}, headers=auth(token))


def test_message_unread_until_receiver_opens_thread(client, db, farmer, consumer):
    res = send(client, consumer["token"], farmer["user_id"], "Are the tomatoes still available?")
    assert res.status_code == 201
    assert res.json()["is_read"] is False

    # the sender's own view never counts it as unread
    convs = client.get("/api/messages", headers=auth(consumer["token"])).json()["conversations"]
    assert convs[0]["unread"] == 0

    assert db.messages.find_one({"receiver_id": farmer["user_id"]})["is_read"] is False

    thread = client.get(f"/api/messages/{consumer['user_id']}", headers=auth(farmer["token"])).json()["items"]
    assert [m["is_read"] for m in thread] == [True]

    again = client.get(f"/api/messages/{farmer['user_id']}", headers=auth(consumer["token"])).json()["items"]
    assert again[0]["is_read"] is True
    convs = client.get("/api/messages", headers=auth(farmer["token"])).json()["conversations"]
    assert convs[0]["unread"] == 0


def test_conversations_group_by_counterparty(client, farmer, consumer):
    other = register(client, "second@example.com", "farmer", username="second_farm", farm_name="Hill Farm")
    send(client, consumer["token"], farmer["user_id"], "first")
    send(client, farmer["token"], consumer["user_id"], "reply")
    send(client, consumer["token"], other["user"]["id"], "hello hill")

    convs = client.get("/api/messages", headers=auth(consumer["token"])).json()["conversations"]
    assert len(convs) == 2
    by_id = {c["counterparty"]["id"]: c for c in convs}
    assert by_id[farmer["user_id"]]["last_message"] == "reply"
    assert by_id[farmer["user_id"]]["unread"] == 1
    assert by_id[farmer["user_id"]]["counterparty"]["info"] == "Green Acres"
    assert by_id[other["user"]["id"]]["counterparty"]["role"] == "farmer"


def test_thread_is_oldest_first(client, farmer, consumer):
    for text in ("one", "two", "three"):
        send(client, consumer["token"], farmer["user_id"], text)
    thread = client.get(f"/api/messages/{farmer['user_id']}", headers=auth(consumer["token"])).json()["items"]
    assert [m["content"] for m in thread] == ["one", "two", "three"]


def test_farmer_id_preselects_conversation(client, farmer, consumer):
    body = client.get("/api/messages", params={"farmerId": farmer["farmer_id"]}, headers=auth(consumer["token"])).json()
    assert body["active"] == farmer["user_id"]
    assert body["messages"] == []


def test_send_validation(client, farmer, consumer):
    assert send(client, consumer["token"], farmer["user_id"], "   ").status_code == 400
    assert send(client, consumer["token"], consumer["user_id"], "me").status_code == 400
    assert send(client, consumer["token"], "65f000000000000000000000", "hi").status_code == 404
    assert client.post("/api/messages", json={"receiver_id": farmer["user_id"], "content": "hi"}).status_code == 401


def test_unknown_counterparty_gets_truncated_label(gateway):
    import messaging

    resolved = messaging.resolve_counterparties(gateway, ["65f0000000000000000000ab"])
    assert resolved["65f0000000000000000000ab"].name == "65f00000"


def test_recipient_search(client, farmer, consumer):
    items = client.get("/api/messages/recipients", params={"q": "green"}, headers=auth(consumer["token"])).json()["items"]
    assert [i["id"] for i in items] == [farmer["user_id"]]

    items = client.get("/api/messages/recipients", params={"q": "shop"}, headers=auth(farmer["token"])).json()["items"]
    assert [i["id"] for i in items] == [consumer["user_id"]]


def test_auto_opened_conversation_reports_no_unread(client, db, farmer, consumer):
    send(client, consumer["token"], farmer["user_id"], "Do you deliver to Francistown?")

    page = client.get("/api/messages", headers=auth(farmer["token"])).json()
    assert page["active"] == consumer["user_id"]
    assert [m["is_read"] for m in page["messages"]] == [True]
    conv = page["conversations"][0]
    assert conv["unread"] == 0
    assert conv["counterparty"]["name"] == "shopper"
    assert conv["counterparty"]["info"] == "Francistown"
    assert db.messages.count_documents({"receiver_id": farmer["user_id"], "is_read": False}) == 0
