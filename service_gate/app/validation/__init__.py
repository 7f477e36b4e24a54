"""
Validators.

Each validator exposes ``invoke(options)`` and returns a ValidationOk or a
ValidationErr; none of them raise across the gate.

- trust_check: whitelist membership of the token's unverified issuer.
- token_verifier: signature, time claims and audience against the issuer's key set.
- bearer: Authorization header parsing shared by both.
"""
