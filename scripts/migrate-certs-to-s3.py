#!/usr/bin/env python3
"""
migrate-certs-to-s3.py : migration one-shot d'un stockage de certificats local vers S3.

À exécuter UNE SEULE FOIS avant de passer la flotte en USE_S3_STORAGE=true.
Toutes les clés du répertoire local (certificats, clés privées, comptes ACME)
sont uploadées sous le préfixe du bucket. Les fichiers de lock ne sont jamais copiés.

Pré-requis :
    - Le bucket doit exister
    - Aucune instance ne doit émettre de certificat pendant la migration

Usage :
    # Tester sans rien écrire
    python scripts/migrate-certs-to-s3.py --dry-run \\
        --local-dir ./data/certstore \\
        --s3-endpoint http://localhost:9000 \\
        --s3-access-key certstore-admin \\
        --s3-secret-key SECRETPASSWORD \\
        --s3-bucket tls-certificates \\
        --s3-prefix caddy

    # Migration réelle (retirer --dry-run), --overwrite pour écraser les clés distantes
"""

from __future__ import annotations

import argparse
import sys

from certstore.storage.errors import StorageError
from certstore.storage.local_backend import LocalStorageBackend
from certstore.storage.s3_backend import S3StorageBackend


def migrate(args: argparse.Namespace) -> int:
    mode_label = "[DRY RUN] " if args.dry_run else ""

    print(f"\n{'='*60}")
    print(f"  certstore : migration des certificats vers S3")
    print(f"  {mode_label}Endpoint  : {args.s3_endpoint}")
    print(f"  {mode_label}Bucket    : {args.s3_bucket}")
    print(f"  {mode_label}Préfixe   : {args.s3_prefix or '(aucun)'}")
    print(f"  Local dir : {args.local_dir}")
    print(f"{'='*60}\n")

    source = LocalStorageBackend(base_dir=args.local_dir, prefix=args.local_prefix)
    target = S3StorageBackend(
        bucket=args.s3_bucket,
        prefix=args.s3_prefix,
        endpoint_url=args.s3_endpoint,
        access_key=args.s3_access_key,
        secret_key=args.s3_secret_key,
        region=args.s3_region,
    )

    total = migrated = skipped = errors = 0

    for key in sorted(source.list("", recursive=True)):
        total += 1

        # ── Déjà présent côté S3 ? ──────────────────────────────────────────
        if not args.overwrite and target.exists(key):
            print(f"  SKIP   {key} : déjà en S3")
            skipped += 1
            continue

        try:
            data = source.load(key)
        except StorageError as exc:
            print(f"  WARN   {key} : illisible ({exc})")
            errors += 1
            continue

        print(f"  UPLOAD {key} ({len(data)} octets)", end="", flush=True)
        if args.dry_run:
            print(" [dry run]")
            migrated += 1
            continue

        try:
            target.store(key, data)
        except StorageError as exc:
            print(f" ✗ ({exc})")
            errors += 1
            continue
        print(" ✓")
        migrated += 1

    # ── Résumé ──────────────────────────────────────────────────────────────
    print(f"\n{'='*60}")
    print(f"  {mode_label}Résultat :")
    print(f"    Total   : {total}")
    print(f"    Migré   : {migrated}")
    print(f"    Skip    : {skipped} (déjà en S3)")
    print(f"    Erreurs : {errors}")

    if args.dry_run:
        print(f"\n  DRY RUN terminé. Relancer sans --dry-run pour copier les clés.")
    elif errors == 0:
        print(f"\n  ✓ Migration terminée.")
        print(f"  Activer USE_S3_STORAGE=true et les variables S3_* sur chaque instance, puis redémarrer.")
    else:
        print(f"\n  ⚠ Migration terminée avec {errors} erreur(s). Vérifier les logs ci-dessus.")
    print(f"{'='*60}\n")
    return 1 if errors else 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Copie un stockage de certificats local vers un bucket S3 compatible",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--local-dir",
        default="./data/certstore",
        help="Répertoire du stockage local (défaut: ./data/certstore)",
    )
    parser.add_argument(
        "--local-prefix",
        default="",
        help="Préfixe utilisé dans le répertoire local (défaut: aucun)",
    )
    parser.add_argument(
        "--s3-endpoint",
        default=None,
        help="URL endpoint MinIO/Ceph (défaut: AWS)",
    )
    parser.add_argument("--s3-access-key", default="", help="Access key (défaut: chaîne de credentials boto3)")
    parser.add_argument("--s3-secret-key", default="", help="Secret key")
    parser.add_argument("--s3-bucket", required=True, help="Bucket cible")
    parser.add_argument("--s3-prefix", default="", help="Préfixe des clés dans le bucket")
    parser.add_argument("--s3-region", default="us-east-1", help="Région (défaut: us-east-1)")
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Écraser les clés déjà présentes dans le bucket",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Lister ce qui serait copié sans écrire dans S3",
    )
    args = parser.parse_args()
    sys.exit(migrate(args))


if __name__ == "__main__":
    main()
