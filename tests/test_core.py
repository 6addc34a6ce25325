"""
Tests for the core integrity primitives.

Covers:
1. Hashing and base64 / base64url conversion
2. Digest recomputation under the ledger's ordering convention
3. Object locators and signed links
4. Change-stream parsing
"""

import base64
import hashlib

import httpx
import pytest
from itsdangerous import TimestampSigner

from evidence_store.core import (
    HASH_LENGTH,
    DigestVerifier,
    EvidenceContentRepository,
    Hasher,
    HttpObjectStore,
    InMemoryObjectStore,
    InvalidLocatorError,
    MalformedProofError,
    MalformedRecordError,
    MerkleTree,
    ObjectLocator,
    ObjectStoreError,
    SigningUnavailableError,
    StreamRecordParser,
    combine,
    compare_hashes,
    object_key_for,
)
from evidence_store.schemas import AttachmentRef, DigestProof, RecordKind

from factories import STREAM_ARN, TABLE_ID, b64, kinesis_envelope, leaf, revision_record


class TestHasher:
    """Test hashing and alphabet conversion."""

    def test_deterministic_hash(self):
        """Same input always produces same hash."""
        assert Hasher.compute_hash(b"evidence") == Hasher.compute_hash(b"evidence")

    def test_string_hashed_as_utf8(self):
        assert Hasher.hash_bytes("évidence") == hashlib.sha256("évidence".encode("utf-8")).digest()

    def test_digest_is_32_bytes(self):
        assert len(Hasher.hash_bytes(b"")) == Hasher.DIGEST_SIZE == 32

    def test_base64url_has_no_padding_or_standard_symbols(self):
        for i in range(50):
            encoded = Hasher.compute_hash(f"content-{i}", "base64url")
            assert "=" not in encoded
            assert "+" not in encoded
            assert "/" not in encoded

    def test_url_safe_conversion_is_invertible(self):
        """to_url_safe and from_url_safe are exact inverses for digests."""
        for i in range(50):
            standard = Hasher.compute_hash(f"content-{i}")
            assert Hasher.from_url_safe(Hasher.to_url_safe(standard)) == standard

    def test_known_conversion(self):
        assert Hasher.to_url_safe("a+b/c==") == "a-b_c"
        assert Hasher.from_url_safe("a-b_cd") == "a+b/cd=="

    def test_hex_encoding(self):
        assert Hasher.compute_hash(b"abc", "hex") == hashlib.sha256(b"abc").hexdigest()

    def test_unknown_encoding_rejected(self):
        with pytest.raises(ValueError):
            Hasher.compute_hash(b"abc", "base32")

    def test_decode_hash_accepts_both_alphabets(self):
        digest = Hasher.hash_bytes(b"x")
        standard = base64.b64encode(digest).decode("ascii")
        assert Hasher.decode_hash(standard) == digest
        assert Hasher.decode_hash(Hasher.to_url_safe(standard)) == digest

    def test_decode_hash_rejects_wrong_length(self):
        with pytest.raises(MalformedProofError):
            Hasher.decode_hash(base64.b64encode(b"short").decode("ascii"))

    def test_decode_hash_rejects_bad_encoding(self):
        with pytest.raises(MalformedProofError):
            Hasher.decode_hash("not base64 at all!")

    def test_content_matches_either_alphabet(self):
        content = b'{"codeCoverage": "80%"}'
        assert Hasher.content_matches(content, Hasher.compute_hash(content, "base64"))
        assert Hasher.content_matches(content, Hasher.compute_hash(content, "base64url"))
        assert not Hasher.content_matches(b"tampered", Hasher.compute_hash(content))

    def test_constant_time_compare(self):
        assert Hasher.constant_time_compare("abc", b"abc")
        assert not Hasher.constant_time_compare("abc", "abd")

    def test_distinct_inputs_do_not_collide(self):
        samples = [f"evidence-{i}" for i in range(500)] + ["", " ", "a", "A", b"\x00"]
        digests = {Hasher.hash_bytes(s) for s in samples}
        assert len(digests) == len(samples)


class TestDigestVerifier:
    """Test digest recomputation - the heart of verification."""

    @pytest.fixture
    def verifier(self):
        return DigestVerifier()

    def test_ordering_reads_last_byte_first(self):
        """The final byte decides before any earlier byte."""
        a = bytes([0xFF] * 31 + [0x01])
        b = bytes([0x00] * 31 + [0x02])
        assert compare_hashes(a, b) < 0
        assert compare_hashes(b, a) > 0

    def test_ordering_treats_bytes_as_signed(self):
        """0x80 is -128 and sorts before 0x7F (127)."""
        low = bytes([0x00] * 31 + [0x80])
        high = bytes([0x00] * 31 + [0x7F])
        assert compare_hashes(low, high) < 0

    def test_equal_hashes_compare_zero(self):
        h = leaf("same")
        assert compare_hashes(h, h) == 0

    def test_compare_rejects_short_hashes(self):
        with pytest.raises(MalformedProofError):
            compare_hashes(b"\x00" * 31, leaf("x"))

    def test_combine_is_order_independent(self):
        a, b = leaf("a"), leaf("b")
        assert combine(a, b) == combine(b, a)

    def test_combine_concatenates_smaller_first(self):
        a = bytes([0x00] * 31 + [0x01])
        b = bytes([0x00] * 31 + [0x02])
        assert combine(a, b) == hashlib.sha256(a + b).digest()

    def test_empty_path_requires_exact_match(self, verifier):
        h = b64(leaf("only"))
        assert verifier.verify(h, DigestProof(target_hash=h)).verified
        other = b64(leaf("other"))
        assert not verifier.verify(h, DigestProof(target_hash=other)).verified

    def test_single_step(self, verifier):
        h, s = leaf("h"), leaf("s")
        proof = DigestProof(target_hash=b64(combine(h, s)), proof_path=[b64(s)])
        outcome = verifier.verify(b64(h), proof)
        assert outcome.verified
        assert outcome.steps == 1

    def test_merkle_tree_proofs_verify_for_every_leaf(self, verifier):
        """Construct-then-verify round trip across odd and even tree sizes."""
        for size in (1, 2, 3, 5, 8):
            leaves = [leaf(f"leaf-{i}") for i in range(size)]
            tree = MerkleTree(leaves)
            for index, value in enumerate(leaves):
                outcome = verifier.verify(b64(value), tree.digest_proof(index))
                assert outcome.verified, f"size={size} index={index}"

    def test_wrong_leaf_is_a_mismatch_not_an_error(self, verifier):
        tree = MerkleTree([leaf("a"), leaf("b"), leaf("c"), leaf("d")])
        outcome = verifier.verify(b64(leaf("intruder")), tree.digest_proof(1))
        assert outcome.verified is False
        assert outcome.computed_hash != outcome.target_hash

    def test_tampered_sibling_fails(self, verifier):
        tree = MerkleTree([leaf("a"), leaf("b"), leaf("c"), leaf("d")])
        proof = tree.digest_proof(0)
        tampered = DigestProof(
            target_hash=proof.target_hash,
            proof_path=[b64(leaf("forged"))] + proof.proof_path[1:],
        )
        assert not verifier.verify(b64(leaf("a")), tampered).verified

    def test_proof_path_order_matters(self, verifier):
        tree = MerkleTree([leaf("a"), leaf("b"), leaf("c"), leaf("d")])
        proof = tree.digest_proof(0)
        reversed_proof = DigestProof(
            target_hash=proof.target_hash,
            proof_path=list(reversed(proof.proof_path)),
        )
        assert not verifier.verify(b64(leaf("a")), reversed_proof).verified

    @pytest.mark.parametrize("bad", ["%%%", b64(b"\x01" * 31), b64(b"\x01" * 33)])
    def test_malformed_claimed_hash(self, verifier, bad):
        with pytest.raises(MalformedProofError):
            verifier.verify(bad, DigestProof(target_hash=b64(leaf("t"))))

    def test_malformed_sibling(self, verifier):
        proof = DigestProof(target_hash=b64(leaf("t")), proof_path=[b64(b"\x02" * 16)])
        with pytest.raises(MalformedProofError):
            verifier.verify(b64(leaf("h")), proof)

    def test_malformed_target(self, verifier):
        with pytest.raises(MalformedProofError):
            verifier.verify(b64(leaf("h")), DigestProof(target_hash="bad!"))

    def test_outcome_to_dict(self, verifier):
        h = b64(leaf("h"))
        data = verifier.verify(h, DigestProof(target_hash=h)).to_dict()
        assert data["verified"] is True
        assert data["ordering"] == "signed-bytes-last-to-first"
        assert data["steps"] == 0

    def test_merkle_tree_rejects_empty_and_short_leaves(self):
        with pytest.raises(ValueError):
            MerkleTree([])
        with pytest.raises(MalformedProofError):
            MerkleTree([b"short"])

    def test_hash_length_constant(self):
        assert HASH_LENGTH == 32

    def test_merkle_tree_has_no_padding_leaf(self):
        """Odd trees pad internally, but the padding is not a provable leaf."""
        tree = MerkleTree([leaf("a"), leaf("b"), leaf("c")])
        assert tree.leaf_count == 3
        with pytest.raises(IndexError):
            tree.proof_path(3)
        with pytest.raises(IndexError):
            tree.digest_proof(3)

    def test_block_proof_reaches_same_digest(self, verifier):
        tree = MerkleTree([leaf("revision"), leaf("block"), leaf("other")])
        proof = tree.digest_proof(0, block_index=1)
        assert proof.block_hash == b64(leaf("block"))
        outcome = verifier.verify_block(proof)
        assert outcome.verified
        assert outcome.steps == 2

    def test_block_proof_absent(self, verifier):
        h = b64(leaf("h"))
        assert verifier.verify_block(DigestProof(target_hash=h)) is None

    def test_tampered_block_hash_is_a_mismatch(self, verifier):
        tree = MerkleTree([leaf("revision"), leaf("block"), leaf("other")])
        proof = tree.digest_proof(0, block_index=1).model_copy(
            update={"block_hash": b64(leaf("forged block"))}
        )
        assert verifier.verify(b64(leaf("revision")), proof).verified
        assert not verifier.verify_block(proof).verified

    def test_malformed_block_hash(self, verifier):
        proof = DigestProof(target_hash=b64(leaf("t")), block_hash=b64(b"\x03" * 20))
        with pytest.raises(MalformedProofError):
            verifier.verify_block(proof)


class TestObjectLocator:
    """Test locator building, parsing and signing."""

    def test_build_virtual_host_style(self, locator):
        assert locator.build_locator("bucket-a", "k1/k2") == "https://bucket-a.store.example/k1/k2"

    def test_build_requires_bucket_and_key(self, locator):
        with pytest.raises(InvalidLocatorError):
            locator.build_locator("", "key")
        with pytest.raises(InvalidLocatorError):
            locator.build_locator("bucket", "")

    def test_parse_inverts_build(self, locator):
        url = locator.build_locator("bucket-a", "provider/target hash/content")
        assert locator.parse_locator(url) == ("bucket-a", "provider/target hash/content")

    def test_parse_nested_key(self, locator):
        assert locator.parse_locator("https://bucket-a.store.example/k1/k2") == ("bucket-a", "k1/k2")

    def test_parse_path_style(self, locator):
        assert locator.parse_locator("https://store.example/bucket-b/a/b") == ("bucket-b", "a/b")

    def test_parse_lowercases_bucket(self, locator):
        assert locator.parse_locator("https://Bucket-C.store.example/key")[0] == "bucket-c"

    def test_parse_accepts_aliases(self):
        locator = ObjectLocator(host="s3.amazonaws.com", aliases=["s3.ap-southeast-2.amazonaws.com"])
        url = "https://sample-bucket.s3.ap-southeast-2.amazonaws.com/attachment.doc"
        assert locator.parse_locator(url) == ("sample-bucket", "attachment.doc")

    @pytest.mark.parametrize("url", [
        "",
        "not-a-url",
        "ftp://bucket.store.example/key",
        "https://store.example/",
        "https://bucket.store.example/",
        "https://elsewhere.example/key",
    ])
    def test_parse_rejects_invalid(self, locator, url):
        with pytest.raises(InvalidLocatorError):
            locator.parse_locator(url)

    def test_signed_url_round_trip(self, locator):
        url = locator.signed_url("bucket-a", "k1/k2", ttl=300)
        assert url.startswith("https://bucket-a.store.example/k1/k2?")
        assert "expires=300" in url
        assert locator.verify_signed_url(url) == ("bucket-a", "k1/k2")

    def test_signed_url_tampered_key(self, locator):
        url = locator.signed_url("bucket-a", "k1", ttl=300)
        forged = url.replace("/k1?", "/k2?")
        with pytest.raises(InvalidLocatorError):
            locator.verify_signed_url(forged)

    def test_signed_url_tampered_ttl(self, locator):
        url = locator.signed_url("bucket-a", "k1", ttl=300)
        with pytest.raises(InvalidLocatorError):
            locator.verify_signed_url(url.replace("expires=300", "expires=3000"))

    def test_signed_url_wrong_secret(self, locator):
        url = locator.signed_url("bucket-a", "k1", ttl=300)
        other = ObjectLocator(host="store.example", signing_secret="another-secret")
        with pytest.raises(InvalidLocatorError):
            other.verify_signed_url(url)

    def test_signed_url_expires(self, locator, monkeypatch):
        url = locator.signed_url("bucket-a", "k1", ttl=5)
        issued = TimestampSigner.get_timestamp
        monkeypatch.setattr(
            TimestampSigner, "get_timestamp", lambda self: issued(self) + 60
        )
        with pytest.raises(InvalidLocatorError):
            locator.verify_signed_url(url)

    def test_signed_url_requires_positive_ttl(self, locator):
        with pytest.raises(ValueError):
            locator.signed_url("bucket-a", "k1", ttl=0)

    def test_signed_url_requires_secret(self):
        with pytest.raises(SigningUnavailableError) as exc_info:
            ObjectLocator(host="store.example").signed_url("bucket-a", "k1", ttl=60)
        assert exc_info.value.status_code == 503
        assert not exc_info.value.retryable

    def test_object_key_layout(self):
        assert object_key_for("prov", "tgt", "hash") == "prov/tgt/hash"


class TestEvidenceContentRepository:
    """Test off-ledger content storage by locator."""

    def test_put_then_get(self, content):
        url, content_hash = content.put_content("canary-authority", "canary", b"payload")
        assert content.get_content(url) == b"payload"
        assert content_hash == Hasher.compute_hash(b"payload", "base64url")

    def test_missing_object_returns_none(self, content, locator):
        url = locator.build_locator("evidence-content", "nothing/here")
        assert content.get_content(url) is None

    def test_signed_link_points_at_object(self, content, locator):
        url, _ = content.put_content("canary-authority", "canary", "payload")
        link = content.signed_link(url, ttl=60)
        assert locator.verify_signed_url(link) == locator.parse_locator(url)

    def test_bucket_case_insensitive(self, locator):
        store = InMemoryObjectStore()
        store.put_object("Evidence", "k", b"v")
        assert store.get_object("evidence", "k") == b"v"

    def test_repository_uses_store(self, locator):
        store = InMemoryObjectStore()
        repo = EvidenceContentRepository(store, locator, "bucket-z")
        url, _ = repo.put_content("p", "t", b"body")
        bucket, key = locator.parse_locator(url)
        assert store.get_object(bucket, key) == b"body"

    def test_get_attachment_by_bucket_and_key(self, locator):
        store = InMemoryObjectStore()
        store.put_object("bucket-a", "k1/k2", b"attached")
        repo = EvidenceContentRepository(store, locator, "evidence-content")
        ref = AttachmentRef(bucket_name="bucket-a", object_key="k1/k2", hash="unused")
        assert repo.get_attachment(ref) == b"attached"
        missing = AttachmentRef(bucket_name="bucket-a", object_key="nope", hash="unused")
        assert repo.get_attachment(missing) is None

    def test_store_os_error_becomes_object_store_error(self, locator):
        class BrokenStore(InMemoryObjectStore):
            def get_object(self, bucket, key, timeout=None):
                raise ConnectionResetError("reset by peer")

        repo = EvidenceContentRepository(BrokenStore(), locator, "evidence-content")
        with pytest.raises(ObjectStoreError) as exc_info:
            repo.get_content(locator.build_locator("evidence-content", "k"))
        assert exc_info.value.retryable


class TestHttpObjectStore:
    """Test path-style HTTP object access."""

    @staticmethod
    def _store(handler):
        client = httpx.Client(
            base_url="http://objects.test",
            transport=httpx.MockTransport(handler),
        )
        return HttpObjectStore("http://objects.test", client=client)

    def test_get_object(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, content=b"payload")

        store = self._store(handler)
        assert store.get_object("Bucket-A", "k1/k 2") == b"payload"
        assert seen == ["/bucket-a/k1/k 2"]

    def test_missing_object_returns_none(self):
        store = self._store(lambda request: httpx.Response(404))
        assert store.get_object("bucket-a", "k1") is None

    def test_server_error_is_retryable(self):
        store = self._store(lambda request: httpx.Response(500))
        with pytest.raises(ObjectStoreError) as exc_info:
            store.get_object("bucket-a", "k1")
        assert exc_info.value.retryable

    def test_timeout_is_object_store_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        store = self._store(handler)
        with pytest.raises(ObjectStoreError):
            store.get_object("bucket-a", "k1", timeout=0.1)

    def test_put_object(self):
        bodies = {}

        def handler(request):
            bodies[request.url.path] = request.content
            return httpx.Response(200)

        store = self._store(handler)
        store.put_object("bucket-a", "k1", b"body")
        assert bodies == {"/bucket-a/k1": b"body"}

    def test_put_rejected(self):
        store = self._store(lambda request: httpx.Response(403))
        with pytest.raises(ObjectStoreError):
            store.put_object("bucket-a", "k1", b"body")


class TestStreamRecordParser:
    """Test change-stream decoding."""

    @pytest.fixture
    def parser(self):
        return StreamRecordParser(table_name="evidences")

    def test_decodes_revision_details(self, parser):
        event = parser.parse(revision_record(doc_id="E1", version=3, sequence_no=33))
        assert event.record_kind == RecordKind.REVISION_DETAILS
        assert event.document_id == "E1"
        assert event.version == 3
        assert event.table_id == TABLE_ID
        assert event.block_address.sequence_no == 33
        assert event.stream_source_id == STREAM_ARN
        assert event.attributes.evidence_id == "evidence-E1"
        assert event.attributes.provider_id == "canary-authority"

    def test_payload_is_compact_json(self, parser):
        event = parser.parse(revision_record(data={"b": 1, "a": "x"}))
        assert event.payload == b'{"a":"x","b":1}'

    def test_kinesis_envelope(self, parser):
        event = parser.parse(kinesis_envelope(revision_record(doc_id="E2")))
        assert event.document_id == "E2"

    def test_data_envelope_and_raw_bytes(self, parser):
        record = revision_record(doc_id="E3")
        envelope = kinesis_envelope(record)["kinesis"]
        assert parser.parse(envelope).document_id == "E3"
        assert parser.parse(base64.b64decode(envelope["data"])).document_id == "E3"

    @pytest.mark.parametrize("kind", ["CONTROL", "BLOCK_SUMMARY", "SOMETHING_NEW"])
    def test_other_kinds_dropped(self, parser, kind):
        assert parser.parse({"recordType": kind, "payload": {}}) is None

    def test_table_filter(self, parser):
        assert parser.parse(revision_record(table_name="providers")) is None
        assert StreamRecordParser().parse(revision_record(table_name="providers")) is not None

    @pytest.mark.parametrize("path", [
        ("payload",),
        ("payload", "revision", "hash"),
        ("payload", "revision", "blockAddress"),
        ("payload", "revision", "metadata", "version"),
        ("payload", "tableInfo", "tableId"),
    ])
    def test_missing_required_field(self, parser, path):
        record = revision_record()
        target = record
        for key in path[:-1]:
            target = target[key]
        del target[path[-1]]
        with pytest.raises(MalformedRecordError):
            parser.parse(record)

    def test_negative_version_rejected(self, parser):
        with pytest.raises(MalformedRecordError):
            parser.parse(revision_record(version=-1))

    def test_bad_tx_time_rejected(self, parser):
        record = revision_record()
        record["payload"]["revision"]["metadata"]["txTime"] = "yesterday"
        with pytest.raises(MalformedRecordError):
            parser.parse(record)

    def test_undecodable_envelope(self, parser):
        with pytest.raises(MalformedRecordError):
            parser.parse({"data": "!!not-base64!!"})

    def test_iter_events_isolates_errors(self, parser):
        """A bad record never blocks its neighbours."""
        errors, ignored = [], []
        batch = [
            revision_record(doc_id="A"),
            {"recordType": "REVISION_DETAILS", "payload": {}},
            {"recordType": "CONTROL"},
            revision_record(doc_id="B"),
        ]
        events = list(parser.iter_events(batch, on_error=errors.append, on_ignored=ignored.append))
        assert [e.document_id for e in events] == ["A", "B"]
        assert len(errors) == 1
        assert errors[0].record_kind == "REVISION_DETAILS"
        assert len(ignored) == 1

    def test_iter_events_without_handler_aborts(self, parser):
        batch = [revision_record(doc_id="A"), "garbage", revision_record(doc_id="B")]
        events = parser.iter_events(batch)
        assert next(events).document_id == "A"
        with pytest.raises(MalformedRecordError):
            next(events)

    def test_custom_handler_table(self):
        seen = []

        def handler(record):
            seen.append(record)
            raise MalformedRecordError("unsupported", "BLOCK_SUMMARY")

        parser = StreamRecordParser(handlers={"BLOCK_SUMMARY": handler})
        assert parser.parse(revision_record()) is None
        with pytest.raises(MalformedRecordError):
            parser.parse({"recordType": "BLOCK_SUMMARY"})
        assert len(seen) == 1

    @pytest.mark.parametrize("kind", [["x"], {"k": 1}, 7, None])
    def test_non_string_kind_is_malformed(self, parser, kind):
        with pytest.raises(MalformedRecordError):
            parser.parse({"recordType": kind})

    def test_unhashable_kind_does_not_block_batch(self, parser):
        errors = []
        batch = [{"recordType": ["x"]}, revision_record(doc_id="E2")]
        events = list(parser.iter_events(batch, on_error=errors.append))
        assert [e.document_id for e in events] == ["E2"]
        assert len(errors) == 1

    def test_attachments_decoded(self, parser):
        data = {
            "evidenceId": "evidence-E1",
            "attachments": [{"bucketName": "bucket-a", "objectKey": "k1", "hash": "aGFzaA"}],
        }
        event = parser.parse(revision_record(data=data))
        assert event.attributes.attachments == [
            AttachmentRef(bucket_name="bucket-a", object_key="k1", hash="aGFzaA")
        ]

    @pytest.mark.parametrize("attachment", [
        "bucket-a/k1",
        {"bucketName": "bucket-a", "objectKey": "k1"},
        {"bucketName": "", "objectKey": "k1", "hash": "h"},
    ])
    def test_malformed_attachment(self, parser, attachment):
        data = {"evidenceId": "evidence-E1", "attachments": [attachment]}
        with pytest.raises(MalformedRecordError):
            parser.parse(revision_record(data=data))
