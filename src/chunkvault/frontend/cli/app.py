"""
ChunkVault command line tool.

    chunkvault encrypt report.pdf -o report.cvx --passphrase-env CV_PASS
    chunkvault decrypt report.cvx --manifest report.cvx.manifest.json \
        --sealed-key report.cvx.key.json --passphrase-env CV_PASS -o report.pdf
    chunkvault inspect --manifest report.cvx.manifest.json --blob report.cvx

Encryption writes three artifacts next to the output blob: the concatenated
ciphertext, its manifest and the key material in whichever custody form was
chosen (plain base64 key file by default).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from chunkvault.core.exceptions import ChunkVaultError
from chunkvault.core.hashing import calculate_sha256
from chunkvault.security.assembler import (
    chunk_layout,
    decrypt_file,
    encrypt_file,
)
from chunkvault.security.keys import (
    MasterKey,
    WrappedKey,
    open_master_key,
    seal_master_key,
    unwrap_master_key,
    wrap_master_key,
)
from chunkvault.security.keystore import load_master_key, save_master_key
from chunkvault.security.manifest import ChunkManifest
from .context import AppContext, build_context
from .logging_config import configure_logging

logger = logging.getLogger(__name__)


def _progress_printer(label: str, quiet: bool):
    if quiet:
        return None

    def report(percent: float) -> None:
        end = "\n" if percent >= 100 else ""
        print(f"\r{label}... {percent:5.1f}%", end=end, file=sys.stderr, flush=True)

    return report


def _passphrase_from_env(var: str) -> str:
    value = os.environ.get(var)
    if not value:
        raise ChunkVaultError(f"Environment variable {var} is not set")
    return value


def _write_json(path: Path, data) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def _read_json(path: Path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

def cmd_encrypt(args: argparse.Namespace, ctx: AppContext) -> int:
    src = Path(args.input)
    out = Path(args.output) if args.output else src.with_name(src.name + ".cvx")
    manifest_path = Path(args.manifest) if args.manifest else out.with_name(out.name + ".manifest.json")
    # resolve key custody inputs before doing any work
    passphrase = _passphrase_from_env(args.passphrase_env) if args.passphrase_env else None
    recipient_pem = Path(args.recipient).read_bytes() if args.recipient else None

    manifest, master_key = encrypt_file(
        src, out, on_progress=_progress_printer("Encrypting", args.quiet)
    )
    _write_json(manifest_path, manifest.to_dict())
    file_id = calculate_sha256(out)

    custody = []
    if passphrase:
        sealed = seal_master_key(master_key, passphrase)
        sealed_path = out.with_name(out.name + ".key.json")
        _write_json(sealed_path, sealed)
        custody.append(f"sealed key: {sealed_path}")
    if recipient_pem:
        wrapped = wrap_master_key(master_key, recipient_pem)
        wrapped_path = out.with_name(out.name + ".wrapped.json")
        _write_json(wrapped_path, wrapped.to_dict())
        custody.append(f"wrapped key for {wrapped.recipient_id[:16]}: {wrapped_path}")
    if args.keyring:
        save_master_key(file_id, master_key, service=ctx.settings.keyring_service)
        custody.append(f"keyring entry: {ctx.settings.keyring_service}/{file_id}")
    if args.key_out or not custody:
        key_path = Path(args.key_out) if args.key_out else out.with_name(out.name + ".key")
        key_path.write_text(master_key.export_b64() + "\n", encoding="ascii")
        os.chmod(key_path, 0o600)
        custody.append(f"raw key: {key_path}")

    if args.store:
        info = ctx.store.put_blob(str(out))
        ctx.store.save_manifest(info["hash"], manifest)
        custody.append(f"stored blob: {info['path']}")

    print(f"blob: {out}")
    print(f"manifest: {manifest_path}")
    print(f"id: {file_id}")
    for line in custody:
        print(line)
    return 0


def _load_decrypt_key(args: argparse.Namespace, ctx: AppContext) -> MasterKey:
    if args.key_file:
        return MasterKey.from_b64(Path(args.key_file).read_text(encoding="ascii").strip())
    if args.sealed_key:
        if not args.passphrase_env:
            raise ChunkVaultError("--sealed-key requires --passphrase-env")
        return open_master_key(
            _read_json(Path(args.sealed_key)), _passphrase_from_env(args.passphrase_env)
        )
    if args.wrapped_key:
        if not args.private_key:
            raise ChunkVaultError("--wrapped-key requires --private-key")
        wrapped = WrappedKey.from_dict(_read_json(Path(args.wrapped_key)))
        return unwrap_master_key(wrapped, Path(args.private_key).read_bytes())
    if args.keyring:
        key = load_master_key(args.keyring, service=ctx.settings.keyring_service)
        if key is None:
            raise ChunkVaultError(f"No key stored in keyring for {args.keyring}")
        return key
    raise ChunkVaultError(
        "No key source given; use --key-file, --sealed-key, --wrapped-key or --keyring"
    )


def cmd_decrypt(args: argparse.Namespace, ctx: AppContext) -> int:
    blob = Path(args.blob)
    if args.output:
        out = Path(args.output)
    elif blob.suffix == ".cvx":
        out = blob.with_suffix("")
    else:
        out = blob.with_name(blob.name + ".dec")

    manifest = ChunkManifest.from_json(Path(args.manifest).read_text(encoding="utf-8"))
    master_key = _load_decrypt_key(args, ctx)
    written = decrypt_file(
        blob,
        out,
        manifest,
        master_key,
        on_progress=_progress_printer("Decrypting", args.quiet),
        allow_partial=args.allow_partial,
    )
    print(f"{out} ({written} bytes)")
    return 0


def cmd_inspect(args: argparse.Namespace, ctx: AppContext) -> int:
    manifest = ChunkManifest.from_json(Path(args.manifest).read_text(encoding="utf-8"))
    print(f"chunks: {manifest.chunk_count}")
    print(f"explicit lengths: {'yes' if manifest.has_lengths else 'no'}")
    if manifest.plaintext_size is not None:
        print(f"plaintext size: {manifest.plaintext_size}")

    if args.blob:
        blob_size = Path(args.blob).stat().st_size
    elif manifest.ciphertext_size is not None:
        blob_size = manifest.ciphertext_size
    else:
        return 0

    for index, offset, length in chunk_layout(blob_size, manifest, allow_partial=True):
        print(f"{index:>6}  offset={offset:<12} length={length:<9} iv={manifest[index].iv_b64}")
    return 0


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------

def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chunkvault",
        description="Chunked client-side file encryption (AES-256-GCM, HKDF chunk keys).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Do not print progress")
    sub = parser.add_subparsers(dest="command", required=True)

    enc = sub.add_parser("encrypt", help="Encrypt a file into a chunked ciphertext blob")
    enc.add_argument("input", help="File to encrypt")
    enc.add_argument("-o", "--output", help="Ciphertext blob path (default: <input>.cvx)")
    enc.add_argument("--manifest", help="Manifest path (default: <output>.manifest.json)")
    enc.add_argument("--key-out", help="Write the base64 master key to this path")
    enc.add_argument("--passphrase-env", help="Seal the master key with the passphrase in this env var")
    enc.add_argument("--recipient", help="Wrap the master key for this RSA public key (PEM)")
    enc.add_argument("--keyring", action="store_true", help="Store the master key in the OS keystore")
    enc.add_argument("--store", action="store_true", help="Copy blob and manifest into the local blob store")
    enc.set_defaults(func=cmd_encrypt)

    dec = sub.add_parser("decrypt", help="Reassemble and decrypt a ciphertext blob")
    dec.add_argument("blob", help="Concatenated ciphertext blob")
    dec.add_argument("--manifest", required=True, help="Manifest JSON (v2 or legacy IV list)")
    dec.add_argument("-o", "--output", help="Plaintext output path")
    dec.add_argument("--key-file", help="File holding the base64 master key")
    dec.add_argument("--sealed-key", help="Passphrase-sealed key JSON")
    dec.add_argument("--passphrase-env", help="Env var holding the passphrase for --sealed-key")
    dec.add_argument("--wrapped-key", help="Recipient-wrapped key JSON")
    dec.add_argument("--private-key", help="RSA private key (PEM) for --wrapped-key")
    dec.add_argument("--keyring", metavar="FILE_ID", help="Load the master key from the OS keystore")
    dec.add_argument(
        "--allow-partial",
        action="store_true",
        help="Skip chunks with a non-positive computed length instead of failing",
    )
    dec.set_defaults(func=cmd_decrypt)

    ins = sub.add_parser("inspect", help="Show the chunk layout described by a manifest")
    ins.add_argument("--manifest", required=True)
    ins.add_argument("--blob", help="Ciphertext blob (needed for legacy manifests)")
    ins.set_defaults(func=cmd_inspect)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(argv)

    ctx = build_context()
    configure_logging(logging.DEBUG if args.verbose else ctx.settings.log_level)

    try:
        return args.func(args, ctx)
    except (ChunkVaultError, RuntimeError, OSError, ValueError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
