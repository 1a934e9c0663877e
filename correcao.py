"""
Correção de tentativas: avaliação de cada resposta, nota percentual,
aprovação, escolha da nota que conta entre várias tentativas e as regras
que liberam (ou não) uma nova tentativa.
"""
import logging
import re
from dataclasses import dataclass
from datetime import timedelta

from erros import Conflito, EstadoProvaInvalido
from tipos import MostrarResultado, NotaConsiderada, StatusTentativa, TipoQuestao

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Correcao:
    correta: bool
    pontuacao: float


@dataclass(frozen=True)
class Pontuacao:
    percentual: float
    total_acertos: int


ERRADA = Correcao(False, 0.0)


def _ids(valores):
    return [str(v) for v in (valores or [])]


# --- Avaliação por tipo de questão ---

def _unica(resposta, alternativas, configuracao):
    corretas = [a for a in alternativas if a.correta]
    if not corretas:
        return ERRADA
    acertou = str(resposta.get('alternativaId')) == str(corretas[0].id)
    return Correcao(acertou, 1.0 if acertou else 0.0)


def _multipla(resposta, alternativas, configuracao):
    corretas = set(_ids(a.id for a in alternativas if a.correta))
    selecionadas = set(_ids(resposta.get('alternativasIds')))
    if not corretas:
        return ERRADA
    if selecionadas == corretas:
        return Correcao(True, 1.0)
    acertos = len(selecionadas & corretas)
    erros = len(selecionadas - corretas)
    return Correcao(False, max(0.0, (acertos - erros) / len(corretas)))


def _ordenacao(resposta, alternativas, configuracao):
    ordem_resposta = _ids(resposta.get('ordem'))
    itens = configuracao.get('itens') or []
    if itens:
        ordem_correta = [str(i['id']) for i in sorted(itens, key=lambda i: i['ordemCorreta'])]
        if len(ordem_resposta) != len(ordem_correta):
            return ERRADA
        acertos = sum(1 for dada, certa in zip(ordem_resposta, ordem_correta) if dada == certa)
        if acertos == len(ordem_correta):
            return Correcao(True, 1.0)
        return Correcao(False, acertos / len(ordem_correta))

    ordem_correta = _ids(a.id for a in sorted(alternativas, key=lambda a: a.ordem or 0))
    acertou = ordem_correta == ordem_resposta
    return Correcao(acertou, 1.0 if acertou else 0.0)


def _associacao(resposta, alternativas, configuracao):
    corretas = configuracao.get('conexoesCorretas')
    conexoes = resposta.get('conexoes')
    if not corretas or conexoes is None:
        return ERRADA

    pares_corretos = {(str(c['de']), str(c['para'])) for c in corretas}
    pares_dados = [(str(c['de']), str(c['para'])) for c in conexoes]
    acertos = sum(1 for par in pares_corretos if par in pares_dados)
    erros = sum(1 for par in pares_dados if par not in pares_corretos)

    if acertos == len(pares_corretos) and erros == 0:
        return Correcao(True, 1.0)
    penalidade = 0 if configuracao.get('pontuacaoParcial') is False else (erros / len(pares_corretos)) * 0.5
    return Correcao(False, max(0.0, acertos / len(pares_corretos) - penalidade))


def _lacuna(resposta, alternativas, configuracao):
    lacunas = configuracao.get('lacunas') or []
    if not lacunas:
        return ERRADA

    texto = configuracao.get('texto') or ''
    no_texto = [l for i, l in enumerate(lacunas) if f'[LACUNA_{i + 1}]' in texto]
    avaliadas = no_texto or lacunas
    diferencia_maiusculas = configuracao.get('caseSensitive', False)
    respostas = resposta.get('respostas') or {}

    def normalizar(valor):
        valor = (valor or '').strip()
        return valor if diferencia_maiusculas else valor.lower()

    acertos = 0
    for lacuna in avaliadas:
        dada = normalizar(respostas.get(str(lacuna['id'])))
        if any(dada == normalizar(aceita) for aceita in lacuna.get('respostasAceitas', [])):
            acertos += 1

    pontuacao = acertos / len(avaliadas)
    return Correcao(pontuacao == 1, pontuacao)


def _drag_drop(resposta, alternativas, configuracao):
    zonas = configuracao.get('zonas')
    posicoes = resposta.get('posicoes')
    if not zonas or posicoes is None:
        return ERRADA

    corretos_por_zona = {str(z['id']): set(_ids(z.get('itensCorretos'))) for z in zonas}
    total = sum(len(itens) for itens in corretos_por_zona.values())
    if total == 0:
        return Correcao(True, 1.0)

    acertos = erros = 0
    for zona_id, itens in posicoes.items():
        esperados = corretos_por_zona.get(str(zona_id))
        for item in _ids(itens):
            if esperados is not None and item in esperados:
                acertos += 1
            else:
                erros += 1

    if acertos == total and erros == 0:
        return Correcao(True, 1.0)
    if configuracao.get('pontuacaoParcial') is False:
        return ERRADA
    penalidade = (erros / total) * 0.5 if erros else 0
    return Correcao(False, max(0.0, acertos / total - penalidade))


def _hotspot(resposta, alternativas, configuracao):
    areas = configuracao.get('areas')
    cliques = resposta.get('cliques') or []
    if not areas or not cliques:
        return ERRADA

    clicadas = {str(c['areaId']) for c in cliques if c.get('areaId') is not None}
    fora = sum(1 for c in cliques if c.get('areaId') is None)
    corretas = {str(a['id']) for a in areas if a.get('correta')}
    incorretas = {str(a['id']) for a in areas if not a.get('correta')}

    acertos = len(corretas & clicadas)
    errou_area = bool(incorretas & clicadas)
    if acertos == len(corretas) and not errou_area and fora == 0:
        return Correcao(True, 1.0)
    if not corretas:
        return ERRADA
    return Correcao(False, max(0.0, (acertos - int(errou_area) - fora) / len(corretas)))


def _comando(resposta, alternativas, configuracao):
    aceitos = configuracao.get('respostasAceitas')
    comando = resposta.get('comando')
    if not aceitos or not comando:
        return ERRADA

    def normalizar(valor):
        valor = valor.strip()
        if configuracao.get('ignorarEspacosExtras'):
            valor = re.sub(r'\s+', ' ', valor)
        if not configuracao.get('caseSensitive'):
            valor = valor.lower()
        return valor

    acertou = normalizar(comando) in {normalizar(c) for c in aceitos}
    return Correcao(acertou, 1.0 if acertou else 0.0)


AVALIADORES = {
    TipoQuestao.MULTIPLA_ESCOLHA_UNICA: _unica,
    TipoQuestao.MULTIPLA_ESCOLHA_MULTIPLA: _multipla,
    TipoQuestao.ORDENACAO: _ordenacao,
    TipoQuestao.ASSOCIACAO: _associacao,
    TipoQuestao.LACUNA: _lacuna,
    TipoQuestao.DRAG_DROP: _drag_drop,
    TipoQuestao.HOTSPOT: _hotspot,
    TipoQuestao.COMANDO: _comando,
}


def configuracao_publica(tipo, configuracao):
    """Cópia da configuração da questão sem o gabarito, para exibir ao aluno."""
    if not configuracao:
        return {}
    tipo = TipoQuestao(tipo)
    publica = dict(configuracao)
    if tipo == TipoQuestao.ORDENACAO and 'itens' in publica:
        publica['itens'] = [{k: v for k, v in i.items() if k != 'ordemCorreta'} for i in publica['itens']]
    elif tipo == TipoQuestao.ASSOCIACAO:
        publica.pop('conexoesCorretas', None)
    elif tipo == TipoQuestao.LACUNA and 'lacunas' in publica:
        publica['lacunas'] = [{k: v for k, v in l.items() if k != 'respostasAceitas'} for l in publica['lacunas']]
    elif tipo == TipoQuestao.DRAG_DROP and 'zonas' in publica:
        publica['zonas'] = [{k: v for k, v in z.items() if k != 'itensCorretos'} for z in publica['zonas']]
    elif tipo == TipoQuestao.HOTSPOT and 'areas' in publica:
        publica['areas'] = [{k: v for k, v in a.items() if k != 'correta'} for a in publica['areas']]
    elif tipo == TipoQuestao.COMANDO:
        publica.pop('respostasAceitas', None)
    return publica


def avaliar_resposta(tipo, resposta, alternativas, configuracao=None):
    """Corrige uma resposta; respostas vazias ou malformadas valem zero."""
    if not isinstance(resposta, dict):
        return ERRADA
    avaliador = AVALIADORES[TipoQuestao(tipo)]
    try:
        return avaliador(resposta, list(alternativas), configuracao or {})
    except (KeyError, TypeError, ValueError, AttributeError):
        logger.warning('Resposta malformada para questão do tipo %s: %r', tipo, resposta)
        return ERRADA


# --- Nota ---

def percentual(acertos, total_questoes):
    if total_questoes <= 0:
        raise EstadoProvaInvalido('A prova não possui questões para ser corrigida.')
    # round-half-up sobre inteiros: 69.6 -> 70, 69.5 -> 70
    return float((200 * acertos + total_questoes) // (2 * total_questoes))


def pontuar(respostas, total_questoes):
    """
    Nota de uma tentativa a partir das respostas já corrigidas (objetos ou
    dicionários com o campo `correta`). Idempotente.
    """
    acertos = 0
    for resposta in respostas:
        correta = resposta.get('correta') if isinstance(resposta, dict) else resposta.correta
        if correta:
            acertos += 1
    return Pontuacao(percentual=percentual(acertos, total_questoes), total_acertos=acertos)


def aprovado(nota, nota_minima):
    return nota is not None and nota >= nota_minima


def maior_sequencia_acertos(correcoes):
    """Maior sequência de respostas corretas, na ordem da prova."""
    maior = atual = 0
    for correta in correcoes:
        if correta:
            atual += 1
            maior = max(maior, atual)
        else:
            atual = 0
    return maior


def tentativa_considerada(tentativas, politica):
    """
    Tentativa cuja nota conta para o aluno. MAIOR: maior nota, com empate
    resolvido pela submissão mais antiga. ULTIMA: submissão mais recente.
    """
    submetidas = [t for t in tentativas
                  if t.status == StatusTentativa.SUBMETIDA and t.data_fim is not None and t.nota is not None]
    if not submetidas:
        return None

    if NotaConsiderada(politica) == NotaConsiderada.ULTIMA:
        return max(submetidas, key=lambda t: t.data_fim)
    return min(submetidas, key=lambda t: (-t.nota, t.data_fim))


def verificar_nova_tentativa(tentativas, tentativas_max, intervalo_horas, agora):
    """Levanta Conflito se o aluno ainda não pode iniciar outra tentativa."""
    em_andamento = next((t for t in tentativas if t.status == StatusTentativa.EM_ANDAMENTO), None)
    if em_andamento is not None:
        raise Conflito('Você já tem uma tentativa em andamento.', tentativa_id=em_andamento.id)

    submetidas = [t for t in tentativas if t.status == StatusTentativa.SUBMETIDA]
    if tentativas_max is not None and len(submetidas) >= tentativas_max:
        raise Conflito('Você atingiu o limite de tentativas.', tentativas_max=tentativas_max)

    ultima = max((t.data_fim for t in submetidas if t.data_fim is not None), default=None)
    if intervalo_horas and ultima is not None:
        proxima = ultima + timedelta(hours=intervalo_horas)
        if proxima > agora:
            raise Conflito('Aguarde o intervalo entre tentativas.', proxima_disponivel=proxima.isoformat())


def tempo_esgotado(data_inicio, tempo_limite_minutos, agora, tolerancia_segundos=0):
    if not tempo_limite_minutos:
        return False
    limite = data_inicio + timedelta(minutes=tempo_limite_minutos, seconds=tolerancia_segundos)
    return agora > limite


def resultado_visivel(mostrar_resultado, data_resultado, agora):
    politica = MostrarResultado(mostrar_resultado)
    if politica == MostrarResultado.IMEDIATO:
        return True
    if politica == MostrarResultado.DATA:
        return data_resultado is not None and agora >= data_resultado
    return False
