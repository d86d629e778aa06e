from triopileup.models import Allele, AlleleCount, AlleleSupport, AlleleType
from triopileup.options import SampleRole, TrioOptions, VariantCallerOptions
from triopileup.variant_caller import (
    TrioVariantCaller,
    VerySensitiveCaller,
    normalize_alleles,
)

SNP_T = Allele(AlleleType.SUBSTITUTION, "T")
SNP_G = Allele(AlleleType.SUBSTITUTION, "G")
DEL = Allele(AlleleType.DELETION, "ACG")
INS = Allele(AlleleType.INSERTION, "ATT")


def _count(pos: int, ref_count: int, alleles=None, ref_base: str = "A") -> AlleleCount:
    ac = AlleleCount(position=pos, ref_base=ref_base, ref_support=AlleleSupport(count=ref_count))
    for allele, n in (alleles or {}).items():
        ac.alleles[allele] = AlleleSupport(count=n, forward_count=n)
    return ac


def test_thresholds_differ_for_snps_and_indels():
    caller = VerySensitiveCaller(
        VariantCallerOptions(min_count_snps=3, min_fraction_snps=0.2, min_count_indels=2, min_fraction_indels=0.1)
    )
    assert caller.passes(SNP_T, 3, 15)
    assert not caller.passes(SNP_T, 2, 10)
    assert not caller.passes(SNP_T, 3, 16)
    assert caller.passes(DEL, 2, 20)
    assert not caller.passes(DEL, 1, 5)
    assert not caller.passes(SNP_T, 0, 0)


def test_normalize_alleles_over_longest_deletion():
    ref, alts = normalize_alleles("A", [SNP_T, INS, DEL])
    assert ref == "ACG"
    assert alts == ("TCG", "ATTCG", "A")
    assert normalize_alleles("A", [SNP_T]) == ("A", ("T",))


def test_trio_union_and_per_sample_summaries():
    caller = TrioVariantCaller.from_options(TrioOptions())
    counts = {
        SampleRole.CHILD: {10: _count(10, 10, {SNP_T: 10}), 20: _count(20, 20)},
        SampleRole.PARENT1: {10: _count(10, 20), 20: _count(20, 10, {SNP_G: 10})},
        SampleRole.PARENT2: {10: _count(10, 9, {SNP_G: 1})},
    }
    candidates = caller.call("chr1", counts)
    assert [c.start for c in candidates] == [10, 20]

    first = candidates[0]
    assert first.alts == ("T",)
    assert first.called_by() == (SampleRole.CHILD,)
    assert first.samples[SampleRole.CHILD].alt_support == (10,)
    assert first.samples[SampleRole.PARENT1].alt_support == (0,)
    assert first.samples[SampleRole.PARENT2].depth == 10

    second = candidates[1]
    assert second.alts == ("G",)
    assert second.called_by() == (SampleRole.PARENT1,)
    assert second.samples[SampleRole.CHILD].depth == 20
    assert second.samples[SampleRole.PARENT2].depth == 0
    assert not second.samples[SampleRole.PARENT2].called


def test_alleles_from_different_members_are_merged():
    caller = TrioVariantCaller.from_options(TrioOptions())
    counts = {
        SampleRole.CHILD: {5: _count(5, 5, {SNP_T: 5})},
        SampleRole.PARENT1: {5: _count(5, 5, {SNP_G: 5})},
    }
    (candidate,) = caller.call("chr1", counts)
    assert candidate.alts == ("G", "T")
    assert candidate.is_multiallelic
    assert set(candidate.samples) == {SampleRole.CHILD, SampleRole.PARENT1}


def test_select_variant_types():
    counts = {
        SampleRole.CHILD: {
            1: _count(1, 5, {SNP_T: 5}),
            2: _count(2, 5, {DEL: 5}),
        }
    }
    snps = TrioVariantCaller.from_options(TrioOptions(select_variant_types=["snps"])).call("chr1", counts)
    assert [c.start for c in snps] == [1]
    indels = TrioVariantCaller.from_options(TrioOptions(select_variant_types=["indels"])).call("chr1", counts)
    assert [c.start for c in indels] == [2]
    everything = TrioVariantCaller.from_options(TrioOptions(select_variant_types=["all"])).call("chr1", counts)
    assert len(everything) == 2
