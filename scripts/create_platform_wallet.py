from localcoin.solana_service import generate_mnemonic, keypair_from_mnemonic


def mk(name: str):
    mnemonic = generate_mnemonic()
    keypair = keypair_from_mnemonic(mnemonic)
    print(f"{name}_MNEMONIC=\"{mnemonic}\"")
    print(f"{name}_ADDRESS={keypair.pubkey()}")
    print()


if __name__ == "__main__":
    # Fund the printed address with SOL and tokens before processing cash-outs.
    mk("LOCALCOIN")
