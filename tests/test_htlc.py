#!/usr/bin/env python3
"""
HTLC Spend Tests

1. Audit of a contract and its funding transaction
2. Redeem transaction (secret branch), signature validity
3. Refund transaction (locktime branch)
4. Secret extraction from redeem transactions

Usage:
    python -m pytest tests/test_htlc.py
"""

import unittest
from unittest.mock import MagicMock

from ecdsa import VerifyingKey, SECP256k1
from ecdsa.util import sigdecode_der
from bitcoin.core import CMutableTransaction, CMutableTxIn, COutPoint, CMutableTxOut
from bitcoin.core.script import CScript, OP_TRUE

from helpers import ALICE, BOB, CAROL, SECRET, NOW, HOUR, pay_to

from atomicswap.core import sha256, hash160
from atomicswap.chains.btc import Deadline
from atomicswap.chains.wallet import KeySigner, NodeWalletSigner, witness_sighash, decode_wif
from atomicswap.errors import (
    AddressMismatch, AmountMismatch, SecretHashMismatch, UnsafeLocktime,
    MalformedContract, SecretMismatch, LocktimeNotElapsed, SecretNotFound,
    SigningError, InvalidParameter, RPCError,
)
from atomicswap.htlc.audit import audit_contract, find_contract_output
from atomicswap.htlc.contract import build_contract
from atomicswap.htlc.extract import extract_secret
from atomicswap.htlc.spend import (
    build_redeem_tx, build_refund_tx, build_presigned_refund_tx, witness_branch,
    REDEEM, REFUND, SEQUENCE_LOCKTIME,
)

LOCKTIME = NOW + 48 * HOUR
AMOUNT = 1_000_000


def _setup():
    contract = build_contract(BOB.address, ALICE.address, sha256(SECRET), LOCKTIME, NOW)
    funding_tx = pay_to(contract.address, AMOUNT)
    return contract, funding_tx


class TestAudit(unittest.TestCase):
    """Contract auditor."""

    def setUp(self):
        self.contract, self.funding_tx = _setup()

    def test_audit(self):
        result = audit_contract(self.contract.script, self.funding_tx, now=NOW)
        self.assertEqual(result.contract_address, self.contract.address)
        self.assertEqual(result.recipient, BOB.address)
        self.assertEqual(result.refund_address, ALICE.address)
        self.assertEqual(result.secret_hash, sha256(SECRET).hex())
        self.assertEqual(result.locktime, LOCKTIME)
        self.assertEqual(result.locked_amount, AMOUNT)
        self.assertEqual(result.output_index, 0)
        self.assertEqual(result.locktime_remaining, 48 * HOUR)
        self.assertTrue(result.well_formed)
        self.assertEqual(result.to_dict()["locked_amount"], AMOUNT)

    def test_audit_without_clock(self):
        result = audit_contract(self.contract.script, self.funding_tx)
        self.assertIsNone(result.locktime_remaining)

    def test_foreign_address(self):
        funding_tx = pay_to(CAROL.address, AMOUNT)
        with self.assertRaises(AddressMismatch) as ctx:
            audit_contract(self.contract.script, funding_tx, now=NOW)
        self.assertIn(self.contract.address, str(ctx.exception))

    def test_amount_below_expected(self):
        with self.assertRaises(AmountMismatch):
            audit_contract(self.contract.script, self.funding_tx, now=NOW,
                           expected_amount=AMOUNT + 1)

    def test_amount_at_least_expected(self):
        result = audit_contract(self.contract.script, self.funding_tx, now=NOW,
                                expected_amount=AMOUNT)
        self.assertEqual(result.locked_amount, AMOUNT)

    def test_secret_hash_mismatch(self):
        with self.assertRaises(SecretHashMismatch):
            audit_contract(self.contract.script, self.funding_tx, now=NOW,
                           expected_secret_hash=sha256(b'another secret'))

    def test_expired_locktime(self):
        with self.assertRaises(UnsafeLocktime):
            audit_contract(self.contract.script, self.funding_tx, now=LOCKTIME)

    def test_injected_opcode(self):
        script = bytes(self.contract.script) + bytes(CScript([OP_TRUE]))
        with self.assertRaises(MalformedContract):
            audit_contract(script, self.funding_tx, now=NOW)

    def test_find_contract_output_index(self):
        tx = pay_to(CAROL.address, 5_000)
        tx.vout.append(CMutableTxOut(AMOUNT, self.contract.script_pubkey))
        self.assertEqual(find_contract_output(self.contract, tx), (2, AMOUNT))


class TestRedeem(unittest.TestCase):
    """Redemption builder, secret branch."""

    def setUp(self):
        self.contract, self.funding_tx = _setup()
        self.signer = KeySigner([BOB.wif])

    def test_redeem(self):
        result = build_redeem_tx(self.contract, self.funding_tx, SECRET, self.signer, fee_rate=2)
        tx = result.tx

        self.assertEqual(len(tx.vin), 1)
        self.assertEqual(tx.vin[0].prevout.hash, self.funding_tx.GetTxid())
        self.assertEqual(tx.vin[0].prevout.n, 0)
        self.assertEqual(tx.nLockTime, 0)
        self.assertEqual(result.value + result.fee, AMOUNT)
        self.assertEqual(result.payout_address, BOB.address)
        self.assertEqual(bytes(tx.vout[0].scriptPubKey[2:]), BOB.pubkey_hash)

        stack = list(tx.wit.vtxinwit[0].scriptWitness.stack)
        self.assertEqual(len(stack), 5)
        self.assertEqual(stack[1], BOB.pubkey)
        self.assertEqual(stack[2], SECRET)
        self.assertEqual(stack[3], b'\x01')
        self.assertEqual(stack[4], self.contract.script)
        self.assertEqual(witness_branch(stack, self.contract.script), REDEEM)

    def test_signature_valid(self):
        result = build_redeem_tx(self.contract, self.funding_tx, SECRET, self.signer)
        stack = result.tx.wit.vtxinwit[0].scriptWitness.stack
        signature, pubkey = stack[0], stack[1]

        self.assertEqual(signature[-1], 0x01)  # SIGHASH_ALL
        digest = witness_sighash(result.tx, 0, self.contract.script, AMOUNT)
        vk = VerifyingKey.from_string(pubkey, curve=SECP256k1)
        self.assertTrue(vk.verify_digest(signature[:-1], digest, sigdecode=sigdecode_der))

        _, s = sigdecode_der(signature[:-1], SECP256k1.order)
        self.assertLessEqual(s, SECP256k1.order // 2)

    def test_wrong_secret(self):
        with self.assertRaises(SecretMismatch):
            build_redeem_tx(self.contract, self.funding_tx, b'\x00' * 32, self.signer)

    def test_short_secret(self):
        with self.assertRaises(SecretMismatch):
            build_redeem_tx(self.contract, self.funding_tx, SECRET[:31], self.signer)

    def test_signer_without_key(self):
        with self.assertRaises(SigningError):
            build_redeem_tx(self.contract, self.funding_tx, SECRET, KeySigner([ALICE.wif]))

    def test_dust_output(self):
        funding_tx = pay_to(self.contract.address, 600)
        with self.assertRaises(InvalidParameter):
            build_redeem_tx(self.contract, funding_tx, SECRET, self.signer, fee_rate=2)

    def test_funding_tx_must_pay_contract(self):
        with self.assertRaises(AddressMismatch):
            build_redeem_tx(self.contract, pay_to(CAROL.address, AMOUNT), SECRET, self.signer)


class TestRefund(unittest.TestCase):
    """Redemption builder, locktime branch."""

    def setUp(self):
        self.contract, self.funding_tx = _setup()
        self.signer = KeySigner([ALICE.wif])

    def test_refund_before_locktime(self):
        with self.assertRaises(LocktimeNotElapsed):
            build_refund_tx(self.contract, self.funding_tx, LOCKTIME - 1, self.signer)

    def test_refund_after_locktime(self):
        result = build_refund_tx(self.contract, self.funding_tx, LOCKTIME, self.signer)
        tx = result.tx
        self.assertEqual(tx.nLockTime, LOCKTIME)
        self.assertEqual(tx.vin[0].nSequence, SEQUENCE_LOCKTIME)
        self.assertEqual(result.payout_address, ALICE.address)

        stack = list(tx.wit.vtxinwit[0].scriptWitness.stack)
        self.assertEqual(len(stack), 4)
        self.assertEqual(stack[2], b'')
        self.assertEqual(witness_branch(stack, self.contract.script), REFUND)

    def test_refund_at_locktime_warns_about_median_time(self):
        with self.assertLogs("atomicswap.htlc.spend", level="WARNING") as logs:
            build_refund_tx(self.contract, self.funding_tx, LOCKTIME, self.signer)
        self.assertIn("only after the next block", logs.output[0])

    def test_presigned_refund(self):
        result = build_presigned_refund_tx(self.contract, self.funding_tx, self.signer)
        self.assertEqual(result.tx.nLockTime, LOCKTIME)

    def test_recipient_cannot_refund(self):
        with self.assertRaises(SigningError):
            build_refund_tx(self.contract, self.funding_tx, LOCKTIME, KeySigner([BOB.wif]))


class TestExtractSecret(unittest.TestCase):
    """Secret extractor."""

    def setUp(self):
        self.contract, self.funding_tx = _setup()

    def test_extract_after_redeem(self):
        redeem = build_redeem_tx(self.contract, self.funding_tx, SECRET, KeySigner([BOB.wif]))
        self.assertEqual(extract_secret(redeem.tx, sha256(SECRET)), SECRET)

    def test_extract_from_script_sig(self):
        txin = CMutableTxIn(COutPoint(b'\x05' * 32, 0), CScript([b'\x30' * 71, SECRET]))
        tx = CMutableTransaction([txin], [CMutableTxOut(1000, CScript([OP_TRUE]))])
        self.assertEqual(extract_secret(tx, sha256(SECRET)), SECRET)

    def test_refund_reveals_nothing(self):
        refund = build_refund_tx(self.contract, self.funding_tx, LOCKTIME, KeySigner([ALICE.wif]))
        with self.assertRaises(SecretNotFound) as ctx:
            extract_secret(refund.tx, sha256(SECRET))
        self.assertIn("refund", str(ctx.exception))

    def test_unrelated_transaction(self):
        with self.assertRaises(SecretNotFound):
            extract_secret(self.funding_tx, sha256(SECRET))

    def test_bad_hash_length(self):
        with self.assertRaises(InvalidParameter):
            extract_secret(self.funding_tx, b'\x00' * 20)


class TestSigners(unittest.TestCase):

    def test_decode_wif(self):
        privkey, compressed = decode_wif(ALICE.wif)
        self.assertEqual(privkey, ALICE.privkey)
        self.assertTrue(compressed)

    def test_decode_wif_invalid(self):
        with self.assertRaises(InvalidParameter):
            decode_wif("notawif")

    def test_key_signer(self):
        signer = KeySigner([ALICE.wif, BOB.wif])
        self.assertTrue(signer.has_key(hash160(ALICE.pubkey)))
        self.assertTrue(signer.has_key(BOB.pubkey_hash))
        self.assertFalse(signer.has_key(CAROL.pubkey_hash))

    def test_node_wallet_signer_falls_back_to_legacy_address(self):
        contract, funding_tx = _setup()
        client = MagicMock()
        client.dump_private_key.side_effect = [RPCError("Private key not available", code=-4), BOB.wif]

        result = build_redeem_tx(contract, funding_tx, SECRET, NodeWalletSigner(client))
        self.assertEqual(result.payout_address, BOB.address)
        self.assertEqual(client.dump_private_key.call_count, 2)

    def test_node_wallet_signer_takes_caller_deadline(self):
        contract, funding_tx = _setup()
        client = MagicMock()
        client.dump_private_key.return_value = BOB.wif

        signer = NodeWalletSigner(client, timeout=10.0)
        build_redeem_tx(contract, funding_tx, SECRET, signer, deadline=Deadline(0.5))
        self.assertLessEqual(client.dump_private_key.call_args.kwargs["timeout"], 0.5)

        build_redeem_tx(contract, funding_tx, SECRET, signer)
        self.assertGreater(client.dump_private_key.call_args.kwargs["timeout"], 9.0)

    def test_node_wallet_signer_without_key(self):
        contract, funding_tx = _setup()
        client = MagicMock()
        client.dump_private_key.side_effect = RPCError("Only legacy wallets are supported", code=-4)

        with self.assertRaises(SigningError):
            build_redeem_tx(contract, funding_tx, SECRET, NodeWalletSigner(client))


if __name__ == "__main__":
    unittest.main(verbosity=2)
