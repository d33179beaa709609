from scripts.populate_wallets import populate


def test_populate_provisions_and_tops_up(settings, store, wallets, chain, ledger, platform_address):
    ledger.fund(platform_address, lamports=10**9)
    store.set("users", "u1", {"name": "Ada"})
    store.set("merchants", "m1", {"companyName": "Bakery"})
    store.set("merchants", "m2", {"companyName": "Has wallet", "walletAddress": "existing"})

    created = populate(wallets, chain, top_up=True)

    assert len(created) == 2
    assert store.get("users", "u1")["walletAddress"] in created
    for address in created:
        assert ledger.lamports[address] == settings.fee_topup_lamports
    assert store.get("merchants", "m2")["walletAddress"] == "existing"


def test_populate_without_top_up(store, wallets, chain, ledger):
    store.set("users", "u1", {"name": "Ada"})
    assert len(populate(wallets, chain, top_up=False)) == 1
    assert ledger.transfers == []
